"""Build complete candidate installations in isolated staging directories.

A candidate is always provisioned from scratch, never patched from the live
tree, and it never touches the live installation. Its metadata is written
into the candidate itself so the applier can validate it without consulting
anything else.
"""
from __future__ import annotations

import atexit
import shutil
import tempfile
import time
from collections.abc import Sequence
from contextlib import nullcontext
from pathlib import Path
from types import TracebackType

from .channels import ResolverFactory, collect_repositories, default_resolver_factory
from .errors import ProvisioningError
from .logging import OperationScope
from .manifest import ManifestBuilder
from .metadata import FileRecord, InstallationMetadataStore, compute_checksum
from .model import (
    ArtifactReference,
    Channel,
    InstallationMetadata,
    Manifest,
    ProvisioningConfig,
    Repository,
)
from .provisioning import ProvisioningEngine, local_cache_scope

STAGING_PREFIX = "fpctl-candidate-"
CANDIDATE_TREE = "installation"


class StagingDirectory:
    """Own a uniquely named staging directory until released.

    The directory is removed by :meth:`release` (or when leaving the ``with``
    block) and, as a fallback, when the interpreter exits. Directories left
    behind by a killed process are removed by :func:`sweep_orphaned_staging`.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = root
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        """Return the acquired directory."""
        if self._path is None:
            raise RuntimeError("Staging directory has not been acquired.")
        return self._path

    @property
    def active(self) -> bool:
        return self._path is not None

    def acquire(self) -> Path:
        """Create the staging directory and register the exit-time cleanup."""
        if self._path is not None:
            return self._path
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self._path = Path(
            tempfile.mkdtemp(
                prefix=STAGING_PREFIX,
                dir=str(self.root) if self.root is not None else None,
            )
        )
        atexit.register(self.release)
        return self._path

    def release(self) -> None:
        """Remove the staging directory (idempotent)."""
        path, self._path = self._path, None
        if path is None:
            return
        atexit.unregister(self.release)
        shutil.rmtree(path, ignore_errors=True)

    def __enter__(self) -> StagingDirectory:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class Candidate:
    """A staged installation tree with its own metadata."""

    def __init__(
        self,
        path: Path,
        metadata: InstallationMetadata,
        files: dict[str, FileRecord],
        staging: StagingDirectory,
    ) -> None:
        self.path = path
        self.metadata = metadata
        self.files = files
        self.staging = staging

    def discard(self) -> None:
        """Remove the candidate's staging directory."""
        self.staging.release()

    def __enter__(self) -> Candidate:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.discard()


class CandidateBuilder:
    """Stage a complete installation for a provisioning configuration."""

    def __init__(
        self,
        engine: ProvisioningEngine,
        *,
        store: InstallationMetadataStore | None = None,
        resolver_factory: ResolverFactory = default_resolver_factory,
        staging_root: Path | None = None,
        cache_dir: Path | None = None,
        op: OperationScope | None = None,
    ) -> None:
        """Initialise the builder with its collaborators."""
        self.engine = engine
        self.store = store or InstallationMetadataStore()
        self.resolver_factory = resolver_factory
        self.staging_root = staging_root
        self.cache_dir = cache_dir
        self._op = op

    def prepare(
        self,
        target_install: Path,
        config: ProvisioningConfig,
        channels: Sequence[Channel],
        *,
        repositories: Sequence[Repository] | None = None,
        pinned: Manifest | None = None,
        recorded_channels: Sequence[Channel] | None = None,
    ) -> Candidate:
        """Resolve, provision and describe a candidate for *target_install*.

        The returned candidate owns its staging directory; callers release
        it with :meth:`Candidate.discard` or a ``with`` block. On failure the
        staging directory is removed before the error propagates.

        *pinned* keeps already-installed stream versions. The candidate
        records *recorded_channels* (default: *channels*) so temporary
        repository overrides are not persisted.
        """
        staging = StagingDirectory(self.staging_root)
        try:
            staging_path = staging.acquire()
        except OSError as exc:
            raise ProvisioningError(
                f"Unable to allocate a staging directory: {exc}",
                staging_root=str(self.staging_root) if self.staging_root else None,
            ) from exc
        self._step("candidate.staging", str(staging_path))

        staging_to_cleanup: StagingDirectory | None = staging
        try:
            candidate = self._build(
                staging, target_install, config, channels, repositories, pinned, recorded_channels
            )
            staging_to_cleanup = None
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to stage candidate for {target_install}: {exc}",
                target=str(target_install),
            ) from exc
        finally:
            if staging_to_cleanup is not None:
                staging_to_cleanup.release()
        return candidate

    def _build(
        self,
        staging: StagingDirectory,
        target_install: Path,
        config: ProvisioningConfig,
        channels: Sequence[Channel],
        repositories: Sequence[Repository] | None,
        pinned: Manifest | None,
        recorded_channels: Sequence[Channel] | None,
    ) -> Candidate:
        builder = ManifestBuilder(self.engine, resolver_factory=self.resolver_factory, op=self._op)
        resolution = builder.resolve(channels, config, pinned=pinned)
        manifest = resolution.manifest

        required: list[ArtifactReference] = []
        for item in resolution.layout.feature_packs:
            placements = list(item.descriptor.artifacts)
            for name in item.descriptor.selected_packages(item.config):
                placements.extend(item.descriptor.packages[name].artifacts)
            for placement in placements:
                stream = manifest.get(placement.reference.key)
                if stream is not None:
                    required.append(placement.reference.with_version(stream.version))
        located = builder.fetch(resolution, channels, dict.fromkeys(required))
        self._step("candidate.artifacts", f"{len(located)} artifacts")

        def locate_artifact(reference: ArtifactReference) -> Path:
            try:
                return located[reference]
            except KeyError:
                raise ProvisioningError(
                    f"Artifact {reference} was not resolved before provisioning.",
                    artifact=str(reference),
                ) from None

        tree = staging.path / CANDIDATE_TREE
        scope = local_cache_scope(self.cache_dir) if self.cache_dir is not None else nullcontext()
        with scope:
            owners = self.engine.provision(
                resolution.layout, config, manifest, locate_artifact, tree
            )
        self._step("candidate.provisioned", f"{len(owners)} files for {target_install}")

        files = {
            relative: FileRecord(sha256=compute_checksum(tree / relative), owner=owner)
            for relative, owner in owners.items()
        }
        recorded = recorded_channels or channels
        metadata = InstallationMetadata(
            manifest=manifest,
            channels=tuple(recorded),
            provisioning_config=config,
            repositories=tuple(repositories or collect_repositories(recorded)),
        )
        self.store.write(tree, metadata, files=files)
        return Candidate(path=tree, metadata=metadata, files=files, staging=staging)

    def _step(self, name: str, detail: str) -> None:
        if self._op is not None:
            self._op.add_step(name, status="success", detail=detail)


def sweep_orphaned_staging(
    root: Path | None,
    max_age_hours: float,
    *,
    now: float | None = None,
) -> list[Path]:
    """Remove staging directories older than *max_age_hours*; return them."""
    base = root if root is not None else Path(tempfile.gettempdir())
    if not base.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    removed: list[Path] = []
    for entry in sorted(base.glob(f"{STAGING_PREFIX}*")):
        try:
            if not entry.is_dir() or entry.stat().st_mtime > cutoff:
                continue
        except OSError:
            continue
        shutil.rmtree(entry, ignore_errors=True)
        removed.append(entry)
    return removed


__all__ = [
    "CANDIDATE_TREE",
    "Candidate",
    "CandidateBuilder",
    "STAGING_PREFIX",
    "StagingDirectory",
    "sweep_orphaned_staging",
]
