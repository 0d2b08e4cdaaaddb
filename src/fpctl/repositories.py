"""Artifact repository access.

Network transport (HTTP, caching, checksum verification) lives outside
fpctl; this module defines the small interface the update engine needs and a
filesystem implementation for repositories laid out in the Maven directory
format::

    <root>/<group/as/path>/<artifactId>/<version>/<artifactId>-<version>[-<classifier>].<ext>

Other URL schemes can be supported by passing a custom factory to the
resolver.
"""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

from .model import ArtifactReference, Repository
from .versions import sort_versions


class RepositoryUnavailableError(RuntimeError):
    """Raised when a repository cannot be reached or read."""


class ArtifactRepository(Protocol):
    """Minimal repository interface consumed by the resolver."""

    @property
    def id(self) -> str:
        """Return the repository identifier."""
        ...

    @property
    def url(self) -> str:
        """Return the repository URL."""
        ...

    def list_versions(self, group_id: str, artifact_id: str) -> list[str]:
        """Return every published version of the artifact (may be empty)."""
        ...

    def fetch(self, reference: ArtifactReference) -> Path | None:
        """Return a local path for a concrete artifact or ``None`` when absent."""
        ...


RepositoryFactory = Callable[[Repository], ArtifactRepository]


class LocalRepository:
    """Maven-layout repository on the local filesystem."""

    def __init__(self, repository: Repository) -> None:
        """Bind to the directory referenced by *repository*."""
        self._repository = repository
        self.root = _path_from_url(repository.url)

    @property
    def id(self) -> str:
        """Return the repository identifier."""
        return self._repository.id

    @property
    def url(self) -> str:
        """Return the repository URL."""
        return self._repository.url

    def artifact_dir(self, group_id: str, artifact_id: str) -> Path:
        """Return the directory holding all versions of an artifact."""
        return self.root.joinpath(*group_id.split("."), artifact_id)

    def artifact_path(self, reference: ArtifactReference) -> Path:
        """Return the expected file location of a concrete artifact."""
        if not reference.version:
            raise ValueError(f"Artifact {reference} has no version.")
        suffix = f"-{reference.classifier}" if reference.classifier else ""
        filename = f"{reference.artifact_id}-{reference.version}{suffix}.{reference.extension}"
        directory = self.artifact_dir(reference.group_id, reference.artifact_id)
        return directory / reference.version / filename

    def list_versions(self, group_id: str, artifact_id: str) -> list[str]:
        """Return version directory names for the artifact."""
        self._ensure_reachable()
        directory = self.artifact_dir(group_id, artifact_id)
        if not directory.is_dir():
            return []
        try:
            return sort_versions(entry.name for entry in directory.iterdir() if entry.is_dir())
        except OSError as exc:
            raise RepositoryUnavailableError(
                f"Failed to list versions in repository '{self.id}': {exc}"
            ) from exc

    def fetch(self, reference: ArtifactReference) -> Path | None:
        """Return the artifact path when the file exists."""
        self._ensure_reachable()
        path = self.artifact_path(reference)
        return path if path.is_file() else None

    def _ensure_reachable(self) -> None:
        if not self.root.is_dir():
            raise RepositoryUnavailableError(
                f"Repository '{self.id}' is not reachable at {self.url}."
            )


def open_repository(repository: Repository) -> ArtifactRepository:
    """Return the default repository implementation for *repository*."""
    scheme = urlparse(repository.url).scheme
    if scheme in ("", "file") or _looks_like_windows_path(repository.url):
        return LocalRepository(repository)
    raise RepositoryUnavailableError(
        f"Repository '{repository.id}' uses unsupported scheme '{scheme}'."
    )


def _path_from_url(url: str) -> Path:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path)).expanduser()
    return Path(url).expanduser()


def _looks_like_windows_path(url: str) -> bool:
    return len(url) > 2 and url[1] == ":" and url[0].isalpha()


__all__ = [
    "ArtifactRepository",
    "LocalRepository",
    "RepositoryFactory",
    "RepositoryUnavailableError",
    "open_repository",
]
