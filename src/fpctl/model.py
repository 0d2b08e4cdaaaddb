"""Immutable value types describing channels, manifests and provisioning state.

All types are frozen dataclasses with ``to_dict``/``from_dict`` helpers using
the camelCase keys of the persisted YAML documents. ``from_dict`` raises
``ValueError`` on malformed input; callers translate that into the failure
kind appropriate for where the document came from.
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any


def _require_str(data: Mapping[str, Any], key: str, label: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} requires a non-empty '{key}'.")
    return value.strip()


def _optional_str(data: Mapping[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_bool(data: Mapping[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' must be true or false. Got {value!r}.")
    return value


def _as_mapping(value: object, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{label} must be a mapping.")
    return value


def _as_list(value: object, label: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{label} must be a list.")
    return value


def _str_tuple(value: object, label: str, *, sort: bool = True) -> tuple[str, ...]:
    items = [str(item).strip() for item in _as_list(value, label) if str(item).strip()]
    return tuple(sorted(set(items))) if sort else tuple(items)


# ----------------------------------------------------------------------
# Artifacts and manifests
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ArtifactReference:
    """Maven coordinates; without ``version`` this is a resolution request."""

    group_id: str
    artifact_id: str
    extension: str = "jar"
    classifier: str | None = None
    version: str | None = None

    def __post_init__(self) -> None:
        if not self.group_id or not self.artifact_id:
            raise ValueError("Artifact coordinates require groupId and artifactId.")

    @property
    def key(self) -> str:
        """Return the ``groupId:artifactId`` stream key."""
        return f"{self.group_id}:{self.artifact_id}"

    def with_version(self, version: str | None) -> ArtifactReference:
        """Return a copy pinned to *version*."""
        return replace(self, version=version)

    @classmethod
    def parse(cls, coordinate: str, *, extension: str = "jar") -> ArtifactReference:
        """Parse ``group:artifact[:version]`` or ``group:artifact:ext[:classifier]:version``."""
        parts = [part.strip() for part in coordinate.strip().split(":")]
        if len(parts) < 2 or not all(parts):
            raise ValueError(
                f"Coordinate '{coordinate}' must consist of <groupId>:<artifactId>[:<version>]."
            )
        if len(parts) == 2:
            return cls(parts[0], parts[1], extension=extension)
        if len(parts) == 3:
            return cls(parts[0], parts[1], extension=extension, version=parts[2])
        if len(parts) == 4:
            return cls(parts[0], parts[1], extension=parts[2], version=parts[3])
        if len(parts) == 5:
            return cls(parts[0], parts[1], parts[2], parts[3], parts[4])
        raise ValueError(f"Coordinate '{coordinate}' has too many segments.")

    def __str__(self) -> str:
        segments = [self.group_id, self.artifact_id]
        if self.extension != "jar" or self.classifier:
            segments.append(self.extension)
        if self.classifier:
            segments.append(self.classifier)
        if self.version:
            segments.append(self.version)
        return ":".join(segments)


@dataclass(frozen=True, slots=True)
class Stream:
    """A resolved ``groupId:artifactId`` → version entry in a manifest."""

    group_id: str
    artifact_id: str
    version: str

    @property
    def key(self) -> str:
        """Return the ``groupId:artifactId`` stream key."""
        return f"{self.group_id}:{self.artifact_id}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"groupId": self.group_id, "artifactId": self.artifact_id, "version": self.version}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Stream:
        """Build a stream from its persisted mapping."""
        return cls(
            group_id=_require_str(data, "groupId", "Stream"),
            artifact_id=_require_str(data, "artifactId", "Stream"),
            version=_require_str(data, "version", "Stream"),
        )


@dataclass(frozen=True)
class Manifest:
    """Ordered set of streams keyed by ``groupId:artifactId``."""

    streams: tuple[Stream, ...] = ()
    name: str | None = None
    _index: dict[str, Stream] = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self) -> None:
        index: dict[str, Stream] = {}
        for stream in self.streams:
            index[stream.key] = stream
        if len(index) != len(self.streams):
            # Later entries replace earlier ones while keeping first position.
            ordered = tuple(index[key] for key in dict.fromkeys(s.key for s in self.streams))
            object.__setattr__(self, "streams", ordered)
        object.__setattr__(self, "_index", index)

    @classmethod
    def of(cls, streams: Iterable[Stream], *, name: str | None = None) -> Manifest:
        """Build a manifest from *streams* (last write wins per key)."""
        return cls(tuple(streams), name=name)

    def get(self, key: str) -> Stream | None:
        """Return the stream stored under ``groupId:artifactId``."""
        return self._index.get(key)

    def find(self, group_id: str, artifact_id: str) -> Stream | None:
        """Return the stream for *group_id*/*artifact_id* if recorded."""
        return self._index.get(f"{group_id}:{artifact_id}")

    def keys(self) -> list[str]:
        """Return the stream keys in insertion order."""
        return [stream.key for stream in self.streams]

    def __iter__(self) -> Iterator[Stream]:
        return iter(self.streams)

    def __len__(self) -> int:
        return len(self.streams)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"schemaVersion": "1.0.0"}
        if self.name:
            payload["name"] = self.name
        payload["streams"] = [stream.to_dict() for stream in self.streams]
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Manifest:
        """Build a manifest from its persisted mapping."""
        mapping = _as_mapping(data, "Manifest")
        streams = [
            Stream.from_dict(_as_mapping(item, "Manifest stream"))
            for item in _as_list(mapping.get("streams"), "Manifest streams")
        ]
        return cls.of(streams, name=_optional_str(mapping, "name"))


# ----------------------------------------------------------------------
# Channels
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Repository:
    """A named artifact repository."""

    id: str
    url: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"id": self.id, "url": self.url}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Repository:
        """Build a repository from its persisted mapping."""
        mapping = _as_mapping(data, "Repository")
        return cls(
            id=_require_str(mapping, "id", "Repository"),
            url=_require_str(mapping, "url", "Repository"),
        )

    @classmethod
    def parse(cls, text: str, *, index: int = 0) -> Repository:
        """Parse ``id::url`` or a bare URL (id derived from position)."""
        value = text.strip()
        if "::" in value:
            repo_id, url = value.split("::", 1)
            if repo_id.strip() and url.strip():
                return cls(repo_id.strip(), url.strip())
            raise ValueError(f"Repository '{text}' must be formatted as <id>::<url>.")
        if not value:
            raise ValueError("Repository URL must be non-empty.")
        return cls(f"temp-repo-{index}", value)


@dataclass(frozen=True, slots=True)
class ManifestCoordinate:
    """Location of a channel manifest: a URL or a Maven reference."""

    url: str | None = None
    maven: ArtifactReference | None = None

    def __post_init__(self) -> None:
        if (self.url is None) == (self.maven is None):
            raise ValueError("Manifest coordinate requires exactly one of 'url' or 'maven'.")

    def display(self) -> str:
        """Return ``url`` or ``groupId:artifactId[:version]`` for printing."""
        if self.maven is not None:
            ga = self.maven.key
            return f"{ga}:{self.maven.version}" if self.maven.version else ga
        return str(self.url)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        if self.maven is not None:
            maven: dict[str, object] = {
                "groupId": self.maven.group_id,
                "artifactId": self.maven.artifact_id,
            }
            if self.maven.version:
                maven["version"] = self.maven.version
            return {"maven": maven}
        return {"url": self.url}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ManifestCoordinate:
        """Build a coordinate from its persisted mapping."""
        mapping = _as_mapping(data, "Manifest coordinate")
        if mapping.get("maven") is not None:
            maven = _as_mapping(mapping["maven"], "Manifest maven coordinate")
            return cls(
                maven=ArtifactReference(
                    _require_str(maven, "groupId", "Manifest coordinate"),
                    _require_str(maven, "artifactId", "Manifest coordinate"),
                    extension="yaml",
                    classifier="manifest",
                    version=_optional_str(maven, "version"),
                )
            )
        return cls(url=_require_str(mapping, "url", "Manifest coordinate"))


@dataclass(frozen=True, slots=True)
class Channel:
    """Named, prioritised source of version-pinning rules plus repositories."""

    manifest: ManifestCoordinate
    repositories: tuple[Repository, ...] = ()
    name: str | None = None

    def with_repositories(self, repositories: Iterable[Repository]) -> Channel:
        """Return a copy using *repositories*."""
        return replace(self, repositories=tuple(repositories))

    def with_manifest(self, manifest: ManifestCoordinate) -> Channel:
        """Return a copy pointing at *manifest*."""
        return replace(self, manifest=manifest)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {}
        if self.name:
            payload["name"] = self.name
        payload["manifest"] = self.manifest.to_dict()
        payload["repositories"] = [repo.to_dict() for repo in self.repositories]
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Channel:
        """Build a channel from its persisted mapping."""
        mapping = _as_mapping(data, "Channel")
        if mapping.get("manifest") is None:
            raise ValueError("Channel requires a 'manifest' coordinate.")
        return cls(
            name=_optional_str(mapping, "name"),
            manifest=ManifestCoordinate.from_dict(mapping["manifest"]),
            repositories=tuple(
                Repository.from_dict(item)
                for item in _as_list(mapping.get("repositories"), "Channel repositories")
            ),
        )


# ----------------------------------------------------------------------
# Provisioning configuration
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FeaturePackConfig:
    """A feature-pack dependency inside a provisioning configuration."""

    producer: str
    version: str | None = None
    inherit_packages: bool = True
    inherit_configs: bool = True
    included_packages: tuple[str, ...] = ()
    excluded_packages: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.producer.count(":") != 1:
            raise ValueError(
                f"Feature pack producer '{self.producer}' must be <groupId>:<artifactId>."
            )
        object.__setattr__(self, "included_packages", tuple(sorted(set(self.included_packages))))
        object.__setattr__(self, "excluded_packages", tuple(sorted(set(self.excluded_packages))))

    @property
    def location(self) -> str:
        """Return ``producer[:version]``."""
        return f"{self.producer}:{self.version}" if self.version else self.producer

    @property
    def reference(self) -> ArtifactReference:
        """Return the feature-pack archive reference."""
        group_id, artifact_id = self.producer.split(":")
        return ArtifactReference(group_id, artifact_id, extension="zip", version=self.version)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"location": self.location}
        if not self.inherit_packages:
            payload["inheritPackages"] = False
        if not self.inherit_configs:
            payload["inheritConfigs"] = False
        if self.included_packages:
            payload["includedPackages"] = list(self.included_packages)
        if self.excluded_packages:
            payload["excludedPackages"] = list(self.excluded_packages)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FeaturePackConfig:
        """Build a feature-pack entry from its persisted mapping."""
        mapping = _as_mapping(data, "Feature pack")
        location = _require_str(mapping, "location", "Feature pack")
        parts = location.split(":")
        if len(parts) not in (2, 3):
            raise ValueError(f"Feature pack location '{location}' is malformed.")
        return cls(
            producer=":".join(parts[:2]),
            version=parts[2] if len(parts) == 3 else None,
            inherit_packages=_optional_bool(mapping, "inheritPackages", True),
            inherit_configs=_optional_bool(mapping, "inheritConfigs", True),
            included_packages=_str_tuple(mapping.get("includedPackages"), "includedPackages"),
            excluded_packages=_str_tuple(mapping.get("excludedPackages"), "excludedPackages"),
        )


@dataclass(frozen=True, slots=True)
class ConfigModel:
    """A named configuration built from layers of a model."""

    model: str | None
    name: str | None
    included_layers: tuple[str, ...] = ()
    excluded_layers: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "included_layers", tuple(sorted(set(self.included_layers))))
        object.__setattr__(self, "excluded_layers", tuple(sorted(set(self.excluded_layers))))

    @property
    def id(self) -> tuple[str | None, str | None]:
        """Return the ``(model, name)`` identity."""
        return (self.model, self.name)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"model": self.model, "name": self.name}
        if self.included_layers:
            payload["layers"] = list(self.included_layers)
        if self.excluded_layers:
            payload["excludedLayers"] = list(self.excluded_layers)
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConfigModel:
        """Build a config model from its persisted mapping."""
        mapping = _as_mapping(data, "Config")
        return cls(
            model=_optional_str(mapping, "model"),
            name=_optional_str(mapping, "name"),
            included_layers=_str_tuple(mapping.get("layers"), "layers"),
            excluded_layers=_str_tuple(mapping.get("excludedLayers"), "excludedLayers"),
        )


@dataclass(frozen=True, eq=False)
class ProvisioningConfig:
    """Feature-pack dependencies and configuration models to provision.

    Feature packs keep their declaration order (provisioning order), but
    equality is structural: two configs are equal when they hold the same
    feature packs and configs regardless of order.
    """

    feature_packs: tuple[FeaturePackConfig, ...] = ()
    configs: tuple[ConfigModel, ...] = ()

    def __post_init__(self) -> None:
        producers = [fp.producer for fp in self.feature_packs]
        if len(set(producers)) != len(producers):
            raise ValueError("A feature pack producer may appear at most once.")
        ids = [config.id for config in self.configs]
        if len(set(ids)) != len(ids):
            raise ValueError("A config model/name pair may appear at most once.")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProvisioningConfig):
            return NotImplemented
        return self._identity() == other._identity()

    def __hash__(self) -> int:
        packs, configs = self._identity()
        return hash((frozenset(packs.items()), frozenset(configs.items())))

    def _identity(
        self,
    ) -> tuple[dict[str, FeaturePackConfig], dict[tuple[str | None, str | None], ConfigModel]]:
        return (
            {fp.producer: fp for fp in self.feature_packs},
            {config.id: config for config in self.configs},
        )

    @property
    def producers(self) -> list[str]:
        """Return feature-pack producers in declaration order."""
        return [fp.producer for fp in self.feature_packs]

    def get_feature_pack(self, producer: str) -> FeaturePackConfig | None:
        """Return the dependency entry for *producer*."""
        for fp in self.feature_packs:
            if fp.producer == producer:
                return fp
        return None

    def with_feature_pack(self, feature_pack: FeaturePackConfig) -> ProvisioningConfig:
        """Return a config where *feature_pack* replaces any entry for its producer."""
        remaining = tuple(fp for fp in self.feature_packs if fp.producer != feature_pack.producer)
        return replace(self, feature_packs=(*remaining, feature_pack))

    def get_config(self, model: str | None, name: str | None) -> ConfigModel | None:
        """Return the config model identified by (*model*, *name*)."""
        for config in self.configs:
            if config.id == (model, name):
                return config
        return None

    def with_config(self, config: ConfigModel) -> ProvisioningConfig:
        """Return a config where *config* replaces any model with the same id."""
        remaining = tuple(item for item in self.configs if item.id != config.id)
        return replace(self, configs=(*remaining, config))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "featurePacks": [fp.to_dict() for fp in self.feature_packs],
            "configs": [config.to_dict() for config in self.configs],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProvisioningConfig:
        """Build a provisioning config from its persisted mapping."""
        mapping = _as_mapping(data, "Provisioning config")
        return cls(
            feature_packs=tuple(
                FeaturePackConfig.from_dict(item)
                for item in _as_list(mapping.get("featurePacks"), "featurePacks")
            ),
            configs=tuple(
                ConfigModel.from_dict(item)
                for item in _as_list(mapping.get("configs"), "configs")
            ),
        )


@dataclass(frozen=True)
class InstallationMetadata:
    """The persisted record of what is installed."""

    manifest: Manifest
    channels: tuple[Channel, ...]
    provisioning_config: ProvisioningConfig
    repositories: tuple[Repository, ...] = ()

    def __post_init__(self) -> None:
        if not self.channels:
            raise ValueError("Installation metadata requires at least one channel.")


__all__ = [
    "ArtifactReference",
    "Channel",
    "ConfigModel",
    "FeaturePackConfig",
    "InstallationMetadata",
    "Manifest",
    "ManifestCoordinate",
    "ProvisioningConfig",
    "Repository",
    "Stream",
]
