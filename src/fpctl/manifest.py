"""Resolve the manifest (artifact → version) for a provisioning request."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .channels import (
    ChannelManifest,
    ChannelManifestLoader,
    ChannelStream,
    ResolverFactory,
    collect_repositories,
    default_resolver_factory,
)
from .errors import ArtifactResolutionError, ChannelConfigError, NoStreamFoundError
from .logging import OperationScope
from .model import (
    ArtifactReference,
    Channel,
    FeaturePackConfig,
    Manifest,
    ProvisioningConfig,
    Stream,
)
from .provisioning import ProvisioningEngine, ProvisioningLayout
from .resolver import ArtifactVersionResolver
from .versions import VersionRange


@dataclass
class ManifestResolution:
    """A resolved manifest plus the layout and artifact origins behind it."""

    manifest: Manifest
    layout: ProvisioningLayout
    origins: dict[str, Channel] = field(default_factory=dict)


class ManifestBuilder:
    """Walk channels in priority order to pin every required stream.

    The first channel defining a stream for an artifact wins. A pinned
    ``version`` is used verbatim (its availability is checked when the
    candidate is staged); a ``versionPattern`` is resolved to the highest
    matching version in that channel's repositories.
    """

    def __init__(
        self,
        engine: ProvisioningEngine,
        *,
        loader: ChannelManifestLoader | None = None,
        resolver_factory: ResolverFactory = default_resolver_factory,
        op: OperationScope | None = None,
    ) -> None:
        """Initialise the builder."""
        self.engine = engine
        self._resolver_factory = resolver_factory
        self.loader = loader or ChannelManifestLoader(resolver_factory)
        self._op = op

    def build(self, channels: Sequence[Channel], config: ProvisioningConfig) -> Manifest:
        """Return the manifest satisfying *config* under *channels*."""
        return self.resolve(channels, config).manifest

    def resolve(
        self,
        channels: Sequence[Channel],
        config: ProvisioningConfig,
        *,
        pinned: Manifest | None = None,
    ) -> ManifestResolution:
        """Resolve the manifest and the feature-pack layout for *config*.

        Streams recorded in *pinned* keep their version instead of being
        resolved again.
        """
        if not channels:
            raise ChannelConfigError("At least one channel is required to resolve a manifest.")
        session = _ResolutionSession(
            self.loader.load_all(channels),
            self._resolver_factory,
            pinned=pinned,
        )
        if self._op is not None:
            self._op.add_step(
                "manifest.channels",
                status="success",
                detail=[channel.name or channel.manifest.display() for channel in channels],
            )

        def locate_feature_pack(fp_config: FeaturePackConfig) -> Path:
            reference = fp_config.reference
            version = session.version_for(reference)
            return session.fetch(reference.with_version(version))

        layout = self.engine.build_layout(config, locate_feature_pack)

        for item in layout.feature_packs:
            session.version_for(item.config.reference)
            for placement in item.descriptor.all_artifacts():
                session.version_for(placement.reference)

        manifest = Manifest.of(session.streams.values(), name="installation")
        if self._op is not None:
            self._op.add_step(
                "manifest.resolved", status="success", detail=f"{len(manifest)} streams"
            )
        return ManifestResolution(manifest=manifest, layout=layout, origins=dict(session.origins))

    def is_available(self, channels: Sequence[Channel], reference: ArtifactReference) -> bool:
        """Return ``False`` when no channel or repository offers *reference*.

        Transport failures still raise :class:`ArtifactResolutionError`.
        """
        session = _ResolutionSession(self.loader.load_all(channels), self._resolver_factory)
        try:
            version = session.version_for(reference)
            session.fetch(reference.with_version(version))
        except NoStreamFoundError:
            return False
        return True

    def fetch(
        self,
        resolution: ManifestResolution,
        channels: Sequence[Channel],
        references: Iterable[ArtifactReference],
    ) -> dict[ArtifactReference, Path]:
        """Download concrete artifacts, reporting every missing one together."""
        by_repositories: dict[tuple[str, ...], list[ArtifactReference]] = {}
        resolvers: dict[tuple[str, ...], ArtifactVersionResolver] = {}
        fallback = collect_repositories(channels)
        for reference in references:
            channel = resolution.origins.get(reference.key)
            repositories = list(channel.repositories) if channel is not None else fallback
            key = tuple(repo.id for repo in repositories)
            by_repositories.setdefault(key, []).append(reference)
            if key not in resolvers:
                resolvers[key] = self._resolver_factory(repositories)

        located: dict[ArtifactReference, Path] = {}
        unresolved: list[str] = []
        attempted: list[str] = []
        transport = False
        for key, group in by_repositories.items():
            try:
                for artifact in resolvers[key].resolve_artifacts(group):
                    located[artifact.reference] = artifact.path
            except ArtifactResolutionError as exc:
                unresolved.extend(exc.unresolved)
                for repo in exc.attempted_repositories:
                    if repo not in attempted:
                        attempted.append(repo)
                transport = transport or exc.transport_failure
        if unresolved:
            message = "Unable to resolve artifacts: " + ", ".join(unresolved)
            error_type = ArtifactResolutionError if transport else NoStreamFoundError
            raise error_type(message, unresolved=unresolved, attempted_repositories=attempted)
        return located


class _ResolutionSession:
    """Per-build state: loaded channel manifests, resolved streams and origins."""

    def __init__(
        self,
        manifests: list[tuple[Channel, ChannelManifest]],
        resolver_factory: ResolverFactory,
        *,
        pinned: Manifest | None = None,
    ) -> None:
        self.manifests = manifests
        self.pinned = pinned
        self.streams: dict[str, Stream] = {}
        self.origins: dict[str, Channel] = {}
        self._resolver_factory = resolver_factory
        self._resolvers: dict[int, ArtifactVersionResolver] = {}

    def resolver(self, index: int) -> ArtifactVersionResolver:
        if index not in self._resolvers:
            channel = self.manifests[index][0]
            self._resolvers[index] = self._resolver_factory(channel.repositories)
        return self._resolvers[index]

    def version_for(self, reference: ArtifactReference) -> str:
        existing = self.streams.get(reference.key)
        if existing is not None:
            return existing.version

        if self.pinned is not None:
            recorded = self.pinned.get(reference.key)
            if recorded is not None:
                origin = next(
                    (
                        channel
                        for channel, channel_manifest in self.manifests
                        if channel_manifest.find_stream(reference.group_id, reference.artifact_id)
                    ),
                    None,
                )
                self._record(reference, recorded.version, origin)
                return recorded.version

        for index, (channel, channel_manifest) in enumerate(self.manifests):
            stream = channel_manifest.find_stream(reference.group_id, reference.artifact_id)
            if stream is None:
                continue
            version = self._version_from_stream(index, stream, reference)
            self._record(reference, version, channel)
            return version

        if reference.version:
            self._record(reference, reference.version, None)
            return reference.version
        raise NoStreamFoundError(
            f"No channel defines a stream for {reference.key}.",
            unresolved=[reference.key],
            attempted_repositories=[
                repo.id for repo in collect_repositories(ch for ch, _ in self.manifests)
            ],
        )

    def fetch(self, reference: ArtifactReference) -> Path:
        channel = self.origins.get(reference.key)
        if channel is not None:
            index = next(i for i, (ch, _) in enumerate(self.manifests) if ch is channel)
            resolver = self.resolver(index)
        else:
            resolver = self._resolver_factory(
                collect_repositories(ch for ch, _ in self.manifests)
            )
        return resolver.resolve_artifact(reference).path

    def _version_from_stream(
        self,
        index: int,
        stream: ChannelStream,
        reference: ArtifactReference,
    ) -> str:
        if stream.version is not None:
            return stream.version
        version_range = stream.version_range()
        return self.resolver(index).resolve_latest(
            reference.with_version(None),
            version_range=version_range or VersionRange(),
            accept=None if version_range is not None else stream.accepts,
        )

    def _record(self, reference: ArtifactReference, version: str, channel: Channel | None) -> None:
        self.streams[reference.key] = Stream(reference.group_id, reference.artifact_id, version)
        if channel is not None:
            self.origins[reference.key] = channel


__all__ = ["ManifestBuilder", "ManifestResolution"]
