"""High-level installation operations.

:class:`InstallationManager` wires the resolver, manifest builder, candidate
builder, differ, applier and metadata store together. Components raise
:class:`~fpctl.errors.FpctlError` subclasses; every public operation converts
them into an :class:`OperationResult` so callers branch on ``result.ok`` and
``result.failure.kind`` instead of catching exceptions.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .applier import ApplyMode, CandidateApplier
from .candidate import CandidateBuilder, sweep_orphaned_staging
from .channels import (
    ResolverFactory,
    default_resolver_factory,
    override_repositories,
    resolve_latest_channels,
)
from .config import AppConfig
from .differ import ChangeSet, diff
from .errors import (
    FpctlError,
    NoChangesError,
    NoStreamFoundError,
    OperationError,
    OperationFailure,
)
from .features import FeatureAddRequest, apply_feature_add, build_config_model
from .logging import OperationScope
from .manifest import ManifestBuilder
from .metadata import InstallationMetadataStore
from .model import Channel, FeaturePackConfig, Manifest, ProvisioningConfig, Repository
from .provisioning import ArchiveProvisioningEngine, ProvisioningEngine


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an :class:`InstallationManager` operation."""

    ok: bool
    operation: str
    change_set: ChangeSet | None = None
    manifest: Manifest | None = None
    details: Mapping[str, object] = field(default_factory=dict)
    failure: OperationFailure | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"ok": self.ok, "operation": self.operation}
        if self.change_set is not None:
            payload["change_set"] = self.change_set.to_dict()
        if self.manifest is not None:
            payload["manifest"] = self.manifest.to_dict()
        payload["details"] = dict(self.details)
        if self.failure is not None:
            payload["failure"] = self.failure.to_dict()
        return payload


@dataclass(frozen=True)
class ProvisioningDefinition:
    """What to provision: a configuration plus the channels to resolve it with."""

    config: ProvisioningConfig
    channels: tuple[Channel, ...]

    @classmethod
    def from_coordinate(
        cls,
        coordinate: str,
        channels: Sequence[Channel],
        *,
        packages: Sequence[str] = (),
    ) -> ProvisioningDefinition:
        """Build a definition installing a single feature pack."""
        feature_pack = FeatureAddRequest(coordinate).feature_pack
        if packages:
            feature_pack = FeaturePackConfig(
                producer=feature_pack.producer,
                version=feature_pack.version,
                included_packages=tuple(packages),
            )
        return cls(
            config=ProvisioningConfig(feature_packs=(feature_pack,)),
            channels=tuple(channels),
        )

    @classmethod
    def from_file(
        cls,
        path: Path,
        channels: Sequence[Channel] = (),
    ) -> ProvisioningDefinition:
        """Load a YAML definition (``featurePacks``, ``configs``, optional ``channels``).

        *channels* take precedence over channels listed in the file.
        """
        try:
            raw: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ValueError(f"Unable to read provisioning definition {path}: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise ValueError(f"Provisioning definition {path} must contain a mapping.")
        config = ProvisioningConfig.from_dict(
            {"featurePacks": raw.get("featurePacks"), "configs": raw.get("configs")}
        )
        if not channels:
            channels = [Channel.from_dict(item) for item in raw.get("channels") or []]
        return cls(config=config, channels=tuple(channels))


class InstallationManager:
    """Run provisioning, feature-add, update, restore and export operations."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        engine: ProvisioningEngine | None = None,
        resolver_factory: ResolverFactory = default_resolver_factory,
        store: InstallationMetadataStore | None = None,
    ) -> None:
        """Initialise the manager; *config* supplies staging/cache locations."""
        self.config = config
        self.engine = engine or ArchiveProvisioningEngine()
        self.resolver_factory = resolver_factory
        self.store = store or InstallationMetadataStore()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def provision(
        self,
        target: Path,
        definition: ProvisioningDefinition,
        *,
        repositories: Sequence[Repository] | None = None,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Install *definition* into the (not yet existing) *target*."""

        def run() -> OperationResult:
            self._require_absent(target)
            if not definition.channels:
                raise OperationError(
                    "At least one channel is required to provision an installation.",
                    target=str(target),
                )
            channels = self._effective_channels(definition.channels, repositories)
            builder = self._candidate_builder(op)
            candidate = builder.prepare(
                target,
                definition.config,
                channels,
                recorded_channels=definition.channels,
            )
            with candidate:
                applied = CandidateApplier(self.store, op=op).apply(candidate, target)
            return OperationResult(
                ok=True,
                operation="provision",
                manifest=candidate.metadata.manifest,
                details={
                    "target": str(target),
                    "feature_packs": definition.config.producers,
                    **applied.to_dict(),
                },
            )

        return self._run("provision", run)

    def add_feature_pack(
        self,
        install_dir: Path,
        request: FeatureAddRequest,
        *,
        repositories: Sequence[Repository] | None = None,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Add (or re-configure) a feature pack in an existing installation."""

        def run() -> OperationResult:
            metadata = self.store.load(install_dir)
            channels = self._effective_channels(metadata.channels, repositories)
            feature_pack = request.feature_pack

            if not self.is_feature_pack_available(feature_pack, channels):
                raise NoStreamFoundError(
                    f"Feature pack {feature_pack.location} is not available in the "
                    "installation's channels.",
                    unresolved=[feature_pack.location],
                    attempted_repositories=[
                        repo.id for channel in channels for repo in channel.repositories
                    ],
                )

            preview = ManifestBuilder(self.engine, resolver_factory=self.resolver_factory)
            layout = preview.resolve(
                channels,
                ProvisioningConfig(feature_packs=(feature_pack,)),
                pinned=metadata.manifest,
            ).layout
            config_model = build_config_model(request, layout.layers_by_model())
            new_config = apply_feature_add(
                metadata.provisioning_config, feature_pack, config_model
            )
            _step(op, "features.config", "success", new_config.producers)

            candidate = self._candidate_builder(op).prepare(
                install_dir,
                new_config,
                channels,
                pinned=metadata.manifest,
                recorded_channels=metadata.channels,
            )
            with candidate:
                change_set = diff(
                    metadata.manifest,
                    candidate.metadata.manifest,
                    metadata.provisioning_config,
                    new_config,
                )
                details: dict[str, object] = {
                    "install_dir": str(install_dir),
                    "producer": feature_pack.producer,
                    "dry_run": dry_run,
                }
                if config_model is not None:
                    details["config"] = config_model.to_dict()
                if not dry_run:
                    live_owners = {
                        record.owner for record in self.store.read_files(install_dir).values()
                    }
                    affected = {feature_pack.producer} | {
                        record.owner
                        for record in candidate.files.values()
                        if record.owner not in live_owners
                    }
                    applied = CandidateApplier(self.store, op=op).apply(
                        candidate,
                        install_dir,
                        ApplyMode.FEATURE_ADD,
                        affected_producers=affected,
                        live_metadata=metadata,
                    )
                    details.update(applied.to_dict())
            return OperationResult(
                ok=True,
                operation="feature-add",
                change_set=change_set,
                manifest=candidate.metadata.manifest,
                details=details,
            )

        return self._run("feature-add", run)

    def list_updates(
        self,
        install_dir: Path,
        *,
        repositories: Sequence[Repository] | None = None,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Report the artifact changes an update would apply."""

        def run() -> OperationResult:
            metadata = self.store.load(install_dir)
            channels = self._effective_channels(metadata.channels, repositories)
            builder = ManifestBuilder(self.engine, resolver_factory=self.resolver_factory, op=op)
            manifest = builder.build(channels, metadata.provisioning_config)
            change_set = diff(
                metadata.manifest,
                manifest,
                metadata.provisioning_config,
                metadata.provisioning_config,
            )
            return OperationResult(
                ok=True,
                operation="update-list",
                change_set=change_set,
                manifest=manifest,
                details={"install_dir": str(install_dir)},
            )

        return self._run("update-list", run)

    def perform_update(
        self,
        install_dir: Path,
        *,
        repositories: Sequence[Repository] | None = None,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Update the installation to the latest versions allowed by its channels."""

        def run() -> OperationResult:
            metadata = self.store.load(install_dir)
            channels = self._effective_channels(metadata.channels, repositories)
            builder = ManifestBuilder(self.engine, resolver_factory=self.resolver_factory, op=op)
            config = metadata.provisioning_config
            change_set = diff(metadata.manifest, builder.build(channels, config), config, config)
            if change_set.is_empty:
                raise NoChangesError(
                    "No updates available.", install_dir=str(install_dir)
                )
            details: dict[str, object] = {"install_dir": str(install_dir), "dry_run": dry_run}
            if dry_run:
                return OperationResult(
                    ok=True, operation="update", change_set=change_set, details=details
                )

            candidate = self._candidate_builder(op).prepare(
                install_dir, config, channels, recorded_channels=metadata.channels
            )
            with candidate:
                change_set = diff(metadata.manifest, candidate.metadata.manifest, config, config)
                applied = CandidateApplier(self.store, op=op).apply(
                    candidate,
                    install_dir,
                    ApplyMode.FULL_UPDATE,
                    live_metadata=metadata,
                )
            details.update(applied.to_dict())
            return OperationResult(
                ok=True,
                operation="update",
                change_set=change_set,
                manifest=candidate.metadata.manifest,
                details=details,
            )

        return self._run("update", run)

    def restore(
        self,
        target: Path,
        bundle: Path,
        *,
        repositories: Sequence[Repository] | None = None,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Recreate an installation at *target* from an exported metadata bundle."""

        def run() -> OperationResult:
            self._require_absent(target)
            metadata = self.store.import_bundle(bundle)
            channels = self._effective_channels(metadata.channels, repositories)
            candidate = self._candidate_builder(op).prepare(
                target,
                metadata.provisioning_config,
                channels,
                pinned=metadata.manifest,
                recorded_channels=metadata.channels,
            )
            with candidate:
                applied = CandidateApplier(self.store, op=op).apply(candidate, target)
            return OperationResult(
                ok=True,
                operation="restore",
                manifest=candidate.metadata.manifest,
                details={"target": str(target), "bundle": str(bundle), **applied.to_dict()},
            )

        return self._run("restore", run)

    def export_metadata(
        self,
        install_dir: Path,
        bundle_path: Path,
        *,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Write the installation's metadata bundle to *bundle_path*."""

        def run() -> OperationResult:
            path, checksum = self.store.export_bundle(install_dir, bundle_path)
            _step(op, "metadata.export", "success", str(path))
            return OperationResult(
                ok=True,
                operation="metadata-export",
                details={"bundle": str(path), "sha256": checksum},
            )

        return self._run("metadata-export", run)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def is_feature_pack_available(
        self,
        feature_pack: FeaturePackConfig,
        channels: Sequence[Channel],
    ) -> bool:
        """Return ``False`` when the channels offer no version of *feature_pack*."""
        builder = ManifestBuilder(self.engine, resolver_factory=self.resolver_factory)
        return builder.is_available(channels, feature_pack.reference)

    def clean_staging(self, max_age_hours: float | None = None) -> list[Path]:
        """Remove orphaned candidate staging directories."""
        staging_root = self.config.staging_dir if self.config is not None else None
        if max_age_hours is None:
            max_age_hours = self.config.staging.max_age_hours if self.config is not None else 24.0
        return sweep_orphaned_staging(staging_root, max_age_hours)

    def _candidate_builder(self, op: OperationScope | None) -> CandidateBuilder:
        return CandidateBuilder(
            self.engine,
            store=self.store,
            resolver_factory=self.resolver_factory,
            staging_root=self.config.staging_dir if self.config is not None else None,
            cache_dir=self.config.cache_dir if self.config is not None else None,
            op=op,
        )

    def _effective_channels(
        self,
        channels: Sequence[Channel],
        repositories: Sequence[Repository] | None,
    ) -> list[Channel]:
        overridden = override_repositories(channels, repositories)
        return resolve_latest_channels(overridden, self.resolver_factory)

    @staticmethod
    def _require_absent(target: Path) -> None:
        if target.exists():
            raise OperationError(
                f"Target directory {target} already exists.", target=str(target)
            )

    @staticmethod
    def _run(operation: str, func: Callable[[], OperationResult]) -> OperationResult:
        try:
            return func()
        except FpctlError as exc:
            return OperationResult(ok=False, operation=operation, failure=exc.failure)


def _step(op: OperationScope | None, name: str, status: str, detail: object) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "InstallationManager",
    "OperationResult",
    "ProvisioningDefinition",
]
