"""Promote a staged candidate into the live installation.

Promotion never edits the live tree in place. The complete next state is
assembled in a sibling directory on the same filesystem, validated, and then
swapped in with two renames (live → old, next → live). If the second rename
fails the first one is undone, so the live directory is always either the
old tree or the new one.
"""
from __future__ import annotations

import os
import secrets
import shutil
import tempfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from . import METADATA_FORMAT, __version__
from .candidate import Candidate
from .errors import InvalidUpdateCandidateError, MetadataError, NoChangesError, PromotionError
from .logging import OperationScope
from .metadata import (
    METADATA_DIR,
    TOOL_NAME,
    FileRecord,
    InstallationMetadataStore,
    compute_checksum,
)
from .model import InstallationMetadata
from .provisioning import CONFIG_OWNER

CONSUMED_MARKER = ".consumed"
CONFLICT_SUFFIX = ".fpnew"


class ApplyMode(str, Enum):
    """How much of the live installation a candidate replaces."""

    FULL_UPDATE = "full-update"
    FEATURE_ADD = "feature-add"


@dataclass(frozen=True, slots=True)
class ApplyResult:
    """Outcome of a successful promotion."""

    target: Path
    mode: ApplyMode
    files: int
    preserved: tuple[str, ...] = ()
    conflicts: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "target": str(self.target),
            "mode": self.mode.value,
            "files": self.files,
            "preserved": list(self.preserved),
            "conflicts": list(self.conflicts),
        }


def validate_candidate(
    path: Path,
    store: InstallationMetadataStore | None = None,
) -> InstallationMetadata:
    """Return the candidate's metadata or raise :class:`InvalidUpdateCandidateError`."""
    store = store or InstallationMetadataStore()
    if not path.is_dir():
        raise InvalidUpdateCandidateError(
            f"Candidate {path} does not exist.", candidate=path, reason="missing"
        )
    if (store.metadata_dir(path) / CONSUMED_MARKER).exists():
        raise InvalidUpdateCandidateError(
            f"Candidate {path} has already been applied.", candidate=path, reason="consumed"
        )
    try:
        marker = store.read_tool_marker(path)
        metadata = store.load(path)
    except MetadataError as exc:
        raise InvalidUpdateCandidateError(
            f"Candidate {path} has unusable metadata: {exc}", candidate=path, reason="metadata"
        ) from exc
    if marker is None:
        raise InvalidUpdateCandidateError(
            f"Candidate {path} does not record the tool that built it.",
            candidate=path,
            reason="metadata",
        )
    if (marker.tool, marker.version, marker.format) != (TOOL_NAME, __version__, METADATA_FORMAT):
        raise InvalidUpdateCandidateError(
            f"Candidate {path} was produced by {marker.tool} {marker.version} "
            f"(format {marker.format}); expected {TOOL_NAME} {__version__} "
            f"(format {METADATA_FORMAT}).",
            candidate=path,
            reason="tool-version",
        )
    return metadata


class CandidateApplier:
    """Swap a validated candidate into place."""

    def __init__(
        self,
        store: InstallationMetadataStore | None = None,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Initialise the applier."""
        self.store = store or InstallationMetadataStore()
        self._op = op

    def apply(
        self,
        candidate: Candidate | Path,
        target_install: Path,
        mode: ApplyMode = ApplyMode.FULL_UPDATE,
        *,
        affected_producers: Iterable[str] = (),
        live_metadata: InstallationMetadata | None = None,
    ) -> ApplyResult:
        """Promote *candidate* to *target_install*.

        ``FEATURE_ADD`` takes only the files owned by *affected_producers* (and
        generated configuration) from the candidate; everything else is kept
        from the live tree. Raises :class:`NoChangesError` before touching
        anything when the candidate records the same state as the live
        installation.
        """
        candidate_path = candidate.path if isinstance(candidate, Candidate) else candidate
        if live_metadata is not None:
            candidate_metadata = (
                candidate.metadata
                if isinstance(candidate, Candidate)
                else self.store.load(candidate_path)
            )
            if _same_state(live_metadata, candidate_metadata):
                raise NoChangesError("The candidate matches the installed state.")

        validate_candidate(candidate_path, self.store)
        self._step("applier.validated", str(candidate_path))

        live_exists = target_install.exists()
        parent = target_install.parent
        parent.mkdir(parents=True, exist_ok=True)
        next_dir = Path(tempfile.mkdtemp(prefix=f".{target_install.name}.fpctl-next-", dir=parent))
        next_to_cleanup: Path | None = next_dir
        try:
            if not live_exists:
                preserved, conflicts = [], []
                _copy_tree(candidate_path, next_dir)
            elif mode is ApplyMode.FEATURE_ADD:
                preserved, conflicts = self._assemble_feature_add(
                    candidate_path, target_install, next_dir, set(affected_producers)
                )
            else:
                preserved, conflicts = self._assemble_full_update(
                    candidate_path, target_install, next_dir
                )
            (self.store.metadata_dir(next_dir) / CONSUMED_MARKER).unlink(missing_ok=True)
            files = self._verify_next_state(next_dir)
            self._step("applier.assembled", f"{files} files")

            self._swap(next_dir, target_install, live_exists)
            next_to_cleanup = None
        except OSError as exc:
            raise PromotionError(
                f"Failed to promote candidate into {target_install}: {exc}",
                target=str(target_install),
            ) from exc
        finally:
            if next_to_cleanup is not None:
                shutil.rmtree(next_to_cleanup, ignore_errors=True)

        try:
            (self.store.metadata_dir(candidate_path) / CONSUMED_MARKER).touch()
        except OSError:
            self._step("applier.consumed", f"unable to mark {candidate_path}", status="warning")
        self._step("applier.promoted", str(target_install))
        return ApplyResult(
            target=target_install,
            mode=mode,
            files=files,
            preserved=tuple(preserved),
            conflicts=tuple(conflicts),
        )

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------
    def _assemble_full_update(
        self,
        candidate_path: Path,
        live: Path,
        next_dir: Path,
    ) -> tuple[list[str], list[str]]:
        _copy_tree(candidate_path, next_dir)
        recorded = self.store.read_files(live)
        candidate_files = self.store.read_files(candidate_path)
        preserved: list[str] = []
        conflicts: list[str] = []
        for relative in _iter_files(live):
            record = recorded.get(relative)
            live_file = live / relative
            if record is not None and compute_checksum(live_file) == record.sha256:
                continue
            preserved.append(relative)
            incoming = candidate_files.get(relative)
            if incoming is not None and (record is None or incoming.sha256 != record.sha256):
                _copy_file(candidate_path / relative, next_dir / f"{relative}{CONFLICT_SUFFIX}")
                conflicts.append(relative)
            _copy_file(live_file, next_dir / relative)
        return preserved, conflicts

    def _assemble_feature_add(
        self,
        candidate_path: Path,
        live: Path,
        next_dir: Path,
        affected: set[str],
    ) -> tuple[list[str], list[str]]:
        owners = affected | {CONFIG_OWNER}
        _copy_tree(live, next_dir)
        shutil.rmtree(next_dir / METADATA_DIR, ignore_errors=True)
        _copy_tree(candidate_path / METADATA_DIR, next_dir / METADATA_DIR)

        recorded = self.store.read_files(live)
        candidate_files = self.store.read_files(candidate_path)
        merged: dict[str, FileRecord] = {
            relative: record for relative, record in recorded.items() if record.owner not in owners
        }
        preserved: list[str] = []
        conflicts: list[str] = []

        for relative, record in recorded.items():
            if record.owner in owners and relative not in candidate_files:
                live_file = live / relative
                if live_file.is_file() and compute_checksum(live_file) != record.sha256:
                    preserved.append(relative)
                else:
                    (next_dir / relative).unlink(missing_ok=True)

        for relative, incoming in candidate_files.items():
            if incoming.owner not in owners:
                continue
            merged[relative] = incoming
            live_file = live / relative
            record = recorded.get(relative)
            modified = live_file.is_file() and (
                record is None or compute_checksum(live_file) != record.sha256
            )
            if modified:
                preserved.append(relative)
                if record is None or incoming.sha256 != record.sha256:
                    _copy_file(candidate_path / relative, next_dir / f"{relative}{CONFLICT_SUFFIX}")
                    conflicts.append(relative)
                continue
            _copy_file(candidate_path / relative, next_dir / relative)

        self.store.write_files(next_dir, merged)
        return preserved, conflicts

    # ------------------------------------------------------------------
    # Validation and swap
    # ------------------------------------------------------------------
    def _verify_next_state(self, next_dir: Path) -> int:
        try:
            self.store.load(next_dir)
            records = self.store.read_files(next_dir)
        except MetadataError as exc:
            raise PromotionError(
                f"Assembled installation has invalid metadata: {exc}", next_state=str(next_dir)
            ) from exc
        missing = sorted(relative for relative in records if not (next_dir / relative).is_file())
        if missing:
            raise PromotionError(
                "Assembled installation is missing recorded files.",
                next_state=str(next_dir),
                missing=missing,
            )
        return len(records)

    def _swap(self, next_dir: Path, target: Path, live_exists: bool) -> None:
        if not live_exists:
            os.rename(next_dir, target)
            return
        old_dir = target.parent / f".{target.name}.fpctl-old-{secrets.token_hex(4)}"
        os.rename(target, old_dir)
        try:
            os.rename(next_dir, target)
        except OSError as exc:
            os.rename(old_dir, target)
            raise PromotionError(
                f"Unable to move the new installation into {target}: {exc}",
                target=str(target),
            ) from exc
        shutil.rmtree(old_dir, ignore_errors=True)

    def _step(self, name: str, detail: str, *, status: str = "success") -> None:
        if self._op is not None:
            self._op.add_step(name, status=status, detail=detail)


def _same_state(live: InstallationMetadata, candidate: InstallationMetadata) -> bool:
    return (
        live.provisioning_config == candidate.provisioning_config
        and {s.key: s.version for s in live.manifest}
        == {s.key: s.version for s in candidate.manifest}
    )


def _iter_files(root: Path) -> Iterator[str]:
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if relative.parts[0] == METADATA_DIR or not path.is_file():
            continue
        yield relative.as_posix()


def _copy_tree(source: Path, destination: Path) -> None:
    shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)


def _copy_file(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)


__all__ = [
    "ApplyMode",
    "ApplyResult",
    "CONFLICT_SUFFIX",
    "CandidateApplier",
    "validate_candidate",
]
