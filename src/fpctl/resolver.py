"""Artifact version resolution across prioritised repositories."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import ArtifactResolutionError, NoStreamFoundError
from .logging import OperationScope
from .model import ArtifactReference, Repository
from .repositories import (
    ArtifactRepository,
    RepositoryFactory,
    RepositoryUnavailableError,
    open_repository,
)
from .versions import MavenVersion, VersionRange


@dataclass(frozen=True, slots=True)
class ResolvedArtifact:
    """A concrete artifact together with its local file and origin."""

    reference: ArtifactReference
    path: Path
    repository_id: str


class ArtifactVersionResolver:
    """Pick artifact versions from repositories consulted in priority order.

    A repository that errors or has no candidates is skipped. Resolution only
    fails when no repository offers a matching version; the error records
    every repository attempted so callers can explain what was searched.
    """

    def __init__(
        self,
        repositories: Sequence[Repository],
        *,
        factory: RepositoryFactory = open_repository,
        op: OperationScope | None = None,
    ) -> None:
        """Initialise the resolver with ordered *repositories*."""
        self.repositories = tuple(repositories)
        self._factory = factory
        self._opened: dict[str, ArtifactRepository | None] = {}
        self._op = op

    @property
    def repository_ids(self) -> list[str]:
        """Return the identifiers of the configured repositories."""
        return [repo.id for repo in self.repositories]

    def resolve_latest(
        self,
        reference: ArtifactReference,
        known_version: str | None = None,
        *,
        version_range: VersionRange | None = None,
        accept: Callable[[str], bool] | None = None,
    ) -> str:
        """Return the highest version of *reference* inside the requested range.

        The range defaults to ``[known_version,)`` (unbounded when no version
        is known). *accept* further filters candidates, e.g. by a channel's
        version pattern. Equal versions found in several repositories resolve
        to the first repository in priority order.
        """
        wanted = version_range or VersionRange.at_least(known_version or reference.version)
        best: MavenVersion | None = None
        best_repo: str | None = None
        responded = 0

        for repository in self._iter_repositories():
            try:
                versions = repository.list_versions(reference.group_id, reference.artifact_id)
            except RepositoryUnavailableError as exc:
                self._note_skip(repository.id, str(exc))
                continue
            responded += 1
            for text in versions:
                try:
                    candidate = MavenVersion(text)
                except ValueError:
                    continue
                if not wanted.contains(candidate):
                    continue
                if accept is not None and not accept(text):
                    continue
                if best is None or candidate > best:
                    best = candidate
                    best_repo = repository.id

        if best is None:
            raise self._unresolved([reference], responded, detail=f" in range {wanted}")
        if self._op is not None:
            self._op.add_step(
                "resolver.latest",
                status="success",
                detail=f"{reference.key} -> {best} ({best_repo})",
            )
        return str(best)

    def resolve_artifact(self, reference: ArtifactReference) -> ResolvedArtifact:
        """Locate a concrete artifact file in the first repository holding it."""
        if not reference.version:
            raise ValueError(f"Artifact {reference} must have a version to be fetched.")
        responded = 0
        for repository in self._iter_repositories():
            try:
                path = repository.fetch(reference)
            except RepositoryUnavailableError as exc:
                self._note_skip(repository.id, str(exc))
                continue
            responded += 1
            if path is not None:
                return ResolvedArtifact(reference=reference, path=path, repository_id=repository.id)
        raise self._unresolved([reference], responded)

    def resolve_artifacts(self, references: Iterable[ArtifactReference]) -> list[ResolvedArtifact]:
        """Resolve every reference, reporting all missing artifacts at once."""
        resolved: list[ResolvedArtifact] = []
        missing: list[ArtifactReference] = []
        transport = False
        for reference in references:
            try:
                resolved.append(self.resolve_artifact(reference))
            except ArtifactResolutionError as exc:
                missing.append(reference)
                transport = transport or exc.transport_failure
        if missing:
            message = "Unable to resolve artifacts: " + ", ".join(str(ref) for ref in missing)
            if transport:
                raise ArtifactResolutionError(
                    message,
                    unresolved=[str(ref) for ref in missing],
                    attempted_repositories=self.repository_ids,
                )
            raise NoStreamFoundError(
                message,
                unresolved=[str(ref) for ref in missing],
                attempted_repositories=self.repository_ids,
            )
        return resolved

    def is_available(self, reference: ArtifactReference) -> bool:
        """Return ``False`` when no repository offers *reference*.

        Transport failures still raise :class:`ArtifactResolutionError`.
        """
        try:
            if reference.version:
                self.resolve_artifact(reference)
            else:
                self.resolve_latest(reference)
        except NoStreamFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    def _iter_repositories(self) -> Iterable[ArtifactRepository]:
        for repo in self.repositories:
            if repo.id not in self._opened:
                try:
                    self._opened[repo.id] = self._factory(repo)
                except RepositoryUnavailableError as exc:
                    self._opened[repo.id] = None
                    self._note_skip(repo.id, str(exc))
            opened = self._opened[repo.id]
            if opened is not None:
                yield opened

    def _note_skip(self, repository_id: str, reason: str) -> None:
        if self._op is not None:
            self._op.add_step(
                "resolver.skip", status="warning", detail=f"{repository_id}: {reason}"
            )

    def _unresolved(
        self,
        references: Sequence[ArtifactReference],
        responded: int,
        *,
        detail: str = "",
    ) -> ArtifactResolutionError:
        names = [str(ref) for ref in references]
        attempted = self.repository_ids
        if responded == 0:
            return ArtifactResolutionError(
                f"No repository could be queried for {', '.join(names)}.",
                unresolved=names,
                attempted_repositories=attempted,
            )
        return NoStreamFoundError(
            f"No version of {', '.join(names)} found{detail}.",
            unresolved=names,
            attempted_repositories=attempted,
        )


__all__ = ["ArtifactVersionResolver", "ResolvedArtifact"]
