"""Channel manifests: loading, stream lookup and channel coordinate helpers.

A channel manifest is a YAML document listing streams::

    schemaVersion: 1.0.0
    name: example
    streams:
      - groupId: org.example
        artifactId: core
        versionPattern: "[1.0.0,)"
      - groupId: org.example
        artifactId: tools
        version: 2.1.0.Final
      - groupId: org.example.extras
        artifactId: "*"
        versionPattern: "2\\..*"

``version`` pins an exact version. ``versionPattern`` is either a Maven range
(starting with ``[`` or ``(``) or a regular expression matched against the
whole version string. ``artifactId: "*"`` applies to every artifact of the
group when no exact stream exists.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import yaml

from .errors import ArtifactResolutionError, ChannelConfigError
from .model import Channel, ManifestCoordinate, Repository
from .resolver import ArtifactVersionResolver
from .versions import MavenVersion, VersionRange

ResolverFactory = Callable[[Sequence[Repository]], ArtifactVersionResolver]

WILDCARD = "*"


def default_resolver_factory(repositories: Sequence[Repository]) -> ArtifactVersionResolver:
    """Return a resolver over *repositories* using the default transport."""
    return ArtifactVersionResolver(repositories)


@dataclass(frozen=True, slots=True)
class ChannelStream:
    """A version rule for one artifact (or a whole group) inside a channel."""

    group_id: str
    artifact_id: str
    version: str | None = None
    version_pattern: str | None = None

    def __post_init__(self) -> None:
        if (self.version is None) == (self.version_pattern is None):
            raise ValueError(
                f"Stream {self.group_id}:{self.artifact_id} needs exactly one of "
                "'version' or 'versionPattern'."
            )
        if self.version_pattern is not None and self.is_range:
            try:
                VersionRange.parse(self.version_pattern)
            except ValueError as exc:
                raise ValueError(
                    f"Invalid versionPattern for {self.group_id}:{self.artifact_id}: {exc}"
                ) from exc
        elif self.version_pattern is not None:
            try:
                re.compile(self.version_pattern)
            except re.error as exc:
                raise ValueError(
                    f"Invalid versionPattern for {self.group_id}:{self.artifact_id}: {exc}"
                ) from exc

    @property
    def is_range(self) -> bool:
        """Return ``True`` when the pattern uses Maven range syntax."""
        pattern = self.version_pattern
        return pattern is not None and pattern.lstrip().startswith(("[", "("))

    def version_range(self) -> VersionRange | None:
        """Return the Maven range for range patterns."""
        if not self.is_range or self.version_pattern is None:
            return None
        return VersionRange.parse(self.version_pattern)

    def accepts(self, version: str) -> bool:
        """Return ``True`` when *version* satisfies this stream."""
        if self.version is not None:
            return MavenVersion(version) == MavenVersion(self.version)
        version_range = self.version_range()
        if version_range is not None:
            return version_range.contains(version)
        pattern = self.version_pattern or ""
        return re.fullmatch(pattern, version) is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChannelStream:
        """Build a stream rule from its manifest mapping."""
        group_id = str(data.get("groupId") or "").strip()
        artifact_id = str(data.get("artifactId") or "").strip()
        if not group_id or not artifact_id:
            raise ValueError("Channel streams require 'groupId' and 'artifactId'.")
        version = data.get("version")
        pattern = data.get("versionPattern")
        return cls(
            group_id=group_id,
            artifact_id=artifact_id,
            version=str(version).strip() if version is not None else None,
            version_pattern=str(pattern).strip() if pattern is not None else None,
        )


@dataclass(frozen=True, slots=True)
class ChannelManifest:
    """Parsed channel manifest."""

    streams: tuple[ChannelStream, ...]
    name: str | None = None
    source: str | None = None

    def find_stream(self, group_id: str, artifact_id: str) -> ChannelStream | None:
        """Return the stream for the artifact, falling back to a group wildcard."""
        wildcard: ChannelStream | None = None
        for stream in self.streams:
            if stream.group_id != group_id:
                continue
            if stream.artifact_id == artifact_id:
                return stream
            if stream.artifact_id == WILDCARD and wildcard is None:
                wildcard = stream
        return wildcard

    @classmethod
    def from_dict(cls, data: object, *, source: str | None = None) -> ChannelManifest:
        """Build a manifest from a parsed YAML document."""
        if not isinstance(data, Mapping):
            raise ValueError("Channel manifest must contain a mapping at the top level.")
        raw_streams = data.get("streams") or []
        if not isinstance(raw_streams, list):
            raise ValueError("Channel manifest 'streams' must be a list.")
        streams = []
        for item in raw_streams:
            if not isinstance(item, Mapping):
                raise ValueError("Channel manifest streams must be mappings.")
            streams.append(ChannelStream.from_dict(item))
        name = data.get("name")
        return cls(streams=tuple(streams), name=str(name) if name else None, source=source)

    @classmethod
    def from_yaml(cls, text: str, *, source: str | None = None) -> ChannelManifest:
        """Parse manifest YAML text."""
        return cls.from_dict(yaml.safe_load(text), source=source)


class ChannelManifestLoader:
    """Load channel manifests referenced by URL or Maven coordinate."""

    def __init__(self, resolver_factory: ResolverFactory = default_resolver_factory) -> None:
        """Initialise the loader with a factory building per-channel resolvers."""
        self._resolver_factory = resolver_factory

    def load(self, channel: Channel) -> ChannelManifest:
        """Return the parsed manifest for *channel*."""
        coordinate = channel.manifest
        label = channel.name or coordinate.display()
        if coordinate.maven is not None:
            path = self._resolve_maven_manifest(channel)
        else:
            path = _path_from_url(str(coordinate.url), label)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ChannelConfigError(
                f"Unable to read manifest for channel '{label}': {exc}",
                channel=label,
                manifest=coordinate.display(),
            ) from exc
        try:
            return ChannelManifest.from_yaml(text, source=coordinate.display())
        except (yaml.YAMLError, ValueError) as exc:
            raise ChannelConfigError(
                f"Unable to parse manifest for channel '{label}': {exc}",
                channel=label,
                manifest=coordinate.display(),
            ) from exc

    def load_all(self, channels: Iterable[Channel]) -> list[tuple[Channel, ChannelManifest]]:
        """Load manifests for *channels*, keeping priority order."""
        return [(channel, self.load(channel)) for channel in channels]

    def _resolve_maven_manifest(self, channel: Channel) -> Path:
        maven = channel.manifest.maven
        label = channel.name or channel.manifest.display()
        if maven is None:
            raise ChannelConfigError(
                f"Channel '{label}' does not use a Maven manifest coordinate.", channel=label
            )
        resolver = self._resolver_factory(channel.repositories)
        try:
            version = maven.version or resolver.resolve_latest(maven)
            return resolver.resolve_artifact(maven.with_version(version)).path
        except ArtifactResolutionError as exc:
            raise ChannelConfigError(
                f"Unable to resolve manifest {channel.manifest.display()} for channel "
                f"'{label}': {exc}",
                channel=label,
                manifest=channel.manifest.display(),
                unresolved=list(exc.unresolved),
                attempted_repositories=list(exc.attempted_repositories),
                transport_failure=exc.transport_failure,
            ) from exc


def resolve_latest_channels(
    channels: Iterable[Channel],
    resolver_factory: ResolverFactory = default_resolver_factory,
) -> list[Channel]:
    """Pin Maven manifest coordinates without a version to their latest version."""
    updated: list[Channel] = []
    for channel in channels:
        maven = channel.manifest.maven
        if maven is None or maven.version:
            updated.append(channel)
            continue
        resolver = resolver_factory(channel.repositories)
        try:
            latest = resolver.resolve_latest(maven)
        except ArtifactResolutionError as exc:
            label = channel.name or channel.manifest.display()
            raise ChannelConfigError(
                f"Unable to find a manifest version for channel '{label}': {exc}",
                channel=label,
                manifest=channel.manifest.display(),
                transport_failure=exc.transport_failure,
            ) from exc
        updated.append(channel.with_manifest(ManifestCoordinate(maven=maven.with_version(latest))))
    return updated


def override_repositories(
    channels: Iterable[Channel],
    repositories: Sequence[Repository] | None,
) -> list[Channel]:
    """Replace every channel's repositories with *repositories* (if given)."""
    if not repositories:
        return list(channels)
    return [channel.with_repositories(repositories) for channel in channels]


def collect_repositories(channels: Iterable[Channel]) -> list[Repository]:
    """Return the distinct repositories used by *channels* in priority order."""
    seen: dict[str, Repository] = {}
    for channel in channels:
        for repository in channel.repositories:
            seen.setdefault(repository.id, repository)
    return list(seen.values())


def _path_from_url(url: str, label: str) -> Path:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path)).expanduser()
    if parsed.scheme in ("", None) or (len(url) > 2 and url[1] == ":"):
        return Path(url).expanduser()
    raise ChannelConfigError(
        f"Channel '{label}' manifest URL scheme '{parsed.scheme}' is not supported.",
        channel=label,
        manifest=url,
    )


__all__ = [
    "ChannelManifest",
    "ChannelManifestLoader",
    "ChannelStream",
    "ResolverFactory",
    "WILDCARD",
    "collect_repositories",
    "default_resolver_factory",
    "override_repositories",
    "resolve_latest_channels",
]
