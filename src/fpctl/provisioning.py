"""Feature-pack provisioning engine.

The engine turns a :class:`~fpctl.model.ProvisioningConfig` plus resolved
artifacts into an installation tree. Feature packs are zip archives holding a
``feature-pack.yaml`` descriptor and a ``content/`` tree::

    producer: org.example:server
    dependencies: [org.example:base]
    layers:
      standalone: [base-server, web]
    defaultPackages: [core]
    packages:
      core:
        artifacts:
          - {groupId: org.example, artifactId: core, path: modules/core}
      docs:
        content: docs
    artifacts:
      - {groupId: org.example, artifactId: launcher, path: bin}

Files from ``content/`` are always installed. A package's optional
``content`` names a subdirectory of ``packages/`` in the archive that is
copied into the installation root when the package is selected.
"""
from __future__ import annotations

import os
import shutil
import tempfile
import zipfile
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Protocol
from xml.sax.saxutils import quoteattr

import yaml

from .errors import LayerNotFoundError, ProvisioningError
from .model import ArtifactReference, ConfigModel, FeaturePackConfig, Manifest, ProvisioningConfig

LOCAL_CACHE_ENV = "FPCTL_LOCAL_CACHE"
DESCRIPTOR_NAME = "feature-pack.yaml"
CONFIG_OWNER = "configs"


@contextmanager
def local_cache_scope(cache_dir: Path) -> Iterator[Path]:
    """Expose *cache_dir* via ``FPCTL_LOCAL_CACHE`` for the duration of a run."""
    previous = os.environ.get(LOCAL_CACHE_ENV)
    cache_dir.mkdir(parents=True, exist_ok=True)
    os.environ[LOCAL_CACHE_ENV] = str(cache_dir)
    try:
        yield cache_dir
    finally:
        if previous is None:
            os.environ.pop(LOCAL_CACHE_ENV, None)
        else:
            os.environ[LOCAL_CACHE_ENV] = previous


def _unpack_root() -> Path | None:
    cache_root = os.environ.get(LOCAL_CACHE_ENV)
    if not cache_root:
        return None
    root = Path(cache_root) / "feature-packs"
    root.mkdir(parents=True, exist_ok=True)
    return root


@dataclass(frozen=True, slots=True)
class ArtifactPlacement:
    """Where a resolved artifact is copied inside the installation."""

    reference: ArtifactReference
    path: str


@dataclass(frozen=True, slots=True)
class PackageSpec:
    """A package inside a feature pack."""

    name: str
    artifacts: tuple[ArtifactPlacement, ...] = ()
    content: str | None = None


@dataclass(frozen=True)
class FeaturePackDescriptor:
    """Parsed ``feature-pack.yaml``."""

    producer: str
    dependencies: tuple[str, ...] = ()
    layers: Mapping[str, frozenset[str]] = field(default_factory=dict)
    packages: Mapping[str, PackageSpec] = field(default_factory=dict)
    default_packages: tuple[str, ...] = ()
    artifacts: tuple[ArtifactPlacement, ...] = ()

    def selected_packages(self, config: FeaturePackConfig) -> list[str]:
        """Return the packages selected by *config* in a stable order."""
        selected: list[str] = []
        if config.inherit_packages:
            selected.extend(self.default_packages)
        for name in config.included_packages:
            if name not in self.packages:
                raise ProvisioningError(
                    f"Package '{name}' is not provided by feature pack {self.producer}.",
                    producer=self.producer,
                    package=name,
                    supported_packages=sorted(self.packages),
                )
            if name not in selected:
                selected.append(name)
        return [name for name in selected if name not in config.excluded_packages]

    def all_artifacts(self) -> list[ArtifactPlacement]:
        """Return every artifact the feature pack may install."""
        placements = list(self.artifacts)
        for package in self.packages.values():
            placements.extend(package.artifacts)
        return placements

    @classmethod
    def from_dict(cls, data: object) -> FeaturePackDescriptor:
        """Build a descriptor from parsed YAML."""
        if not isinstance(data, Mapping):
            raise ValueError("feature-pack.yaml must contain a mapping.")
        producer = str(data.get("producer") or "").strip()
        if producer.count(":") != 1:
            raise ValueError("feature-pack.yaml requires 'producer' as <groupId>:<artifactId>.")

        layers_raw = data.get("layers") or {}
        if not isinstance(layers_raw, Mapping):
            raise ValueError("'layers' must map model names to layer lists.")
        layers = {
            str(model): frozenset(str(name) for name in (names or []))
            for model, names in layers_raw.items()
        }

        packages_raw = data.get("packages") or {}
        if not isinstance(packages_raw, Mapping):
            raise ValueError("'packages' must be a mapping.")
        packages: dict[str, PackageSpec] = {}
        for name, spec in packages_raw.items():
            spec_map: Mapping[str, Any] = spec if isinstance(spec, Mapping) else {}
            content = spec_map.get("content")
            packages[str(name)] = PackageSpec(
                name=str(name),
                artifacts=tuple(_parse_placements(spec_map.get("artifacts"))),
                content=str(content) if content else None,
            )

        dependencies_raw = data.get("dependencies") or []
        if not isinstance(dependencies_raw, list):
            raise ValueError("'dependencies' must be a list.")
        dependencies = tuple(str(dep).strip() for dep in dependencies_raw)
        for dependency in dependencies:
            group_id, _, artifact_id = dependency.partition(":")
            if not group_id or not artifact_id or ":" in artifact_id:
                raise ValueError(
                    f"Dependency '{dependency}' must be <groupId>:<artifactId>."
                )

        return cls(
            producer=producer,
            dependencies=dependencies,
            layers=layers,
            packages=packages,
            default_packages=tuple(str(name) for name in data.get("defaultPackages") or []),
            artifacts=tuple(_parse_placements(data.get("artifacts"))),
        )


def _parse_placements(raw: object) -> Iterator[ArtifactPlacement]:
    if raw is None:
        return
    if not isinstance(raw, list):
        raise ValueError("'artifacts' must be a list.")
    for item in raw:
        if not isinstance(item, Mapping):
            raise ValueError("Artifact entries must be mappings.")
        reference = ArtifactReference(
            str(item.get("groupId") or ""),
            str(item.get("artifactId") or ""),
            extension=str(item.get("extension") or "jar"),
            classifier=str(item["classifier"]) if item.get("classifier") else None,
        )
        yield ArtifactPlacement(reference=reference, path=str(item.get("path") or "lib"))


@dataclass(frozen=True, slots=True)
class LayoutFeaturePack:
    """A feature pack placed in provisioning order with its archive."""

    config: FeaturePackConfig
    descriptor: FeaturePackDescriptor
    archive: Path
    transitive: bool = False


@dataclass(frozen=True, slots=True)
class ProvisioningLayout:
    """Feature packs ordered so that dependencies precede dependents."""

    feature_packs: tuple[LayoutFeaturePack, ...]

    @property
    def producers(self) -> list[str]:
        """Return producers in provisioning order."""
        return [item.config.producer for item in self.feature_packs]

    def layers_by_model(self) -> dict[str, set[str]]:
        """Return every layer advertised by the layout grouped by model."""
        merged: dict[str, set[str]] = {}
        for item in self.feature_packs:
            for model, names in item.descriptor.layers.items():
                merged.setdefault(model, set()).update(names)
        return merged


ArchiveLocator = Callable[[FeaturePackConfig], Path]
ArtifactLocator = Callable[[ArtifactReference], Path]


class ProvisioningEngine(Protocol):
    """Interface of the engine materialising installation trees."""

    def load_descriptor(self, archive: Path) -> FeaturePackDescriptor:
        """Return the descriptor stored in a feature-pack archive."""
        ...

    def build_layout(
        self,
        config: ProvisioningConfig,
        locate: ArchiveLocator,
    ) -> ProvisioningLayout:
        """Return the ordered feature packs required by *config*."""
        ...

    def provision(
        self,
        layout: ProvisioningLayout,
        config: ProvisioningConfig,
        manifest: Manifest,
        locate_artifact: ArtifactLocator,
        target: Path,
    ) -> dict[str, str]:
        """Build the installation at *target*; return relative path → owner."""
        ...


class ArchiveProvisioningEngine:
    """Provision installations from zip feature-pack archives."""

    def load_descriptor(self, archive: Path) -> FeaturePackDescriptor:
        """Return the descriptor stored in *archive*."""
        try:
            with zipfile.ZipFile(archive) as bundle:
                raw = bundle.read(DESCRIPTOR_NAME).decode("utf-8")
        except KeyError as exc:
            raise ProvisioningError(
                f"Feature pack {archive.name} has no {DESCRIPTOR_NAME}.",
                archive=str(archive),
            ) from exc
        except (OSError, zipfile.BadZipFile) as exc:
            raise ProvisioningError(
                f"Unable to read feature pack {archive}: {exc}",
                archive=str(archive),
            ) from exc
        try:
            return FeaturePackDescriptor.from_dict(yaml.safe_load(raw))
        except (yaml.YAMLError, ValueError) as exc:
            raise ProvisioningError(
                f"Invalid {DESCRIPTOR_NAME} in {archive.name}: {exc}",
                archive=str(archive),
            ) from exc

    def build_layout(
        self,
        config: ProvisioningConfig,
        locate: ArchiveLocator,
    ) -> ProvisioningLayout:
        """Return feature packs of *config* plus transitive dependencies."""
        ordered: list[LayoutFeaturePack] = []
        visiting: set[str] = set()
        placed: set[str] = set()
        declared = {fp.producer: fp for fp in config.feature_packs}

        def visit(fp_config: FeaturePackConfig, transitive: bool) -> None:
            if fp_config.producer in placed:
                return
            if fp_config.producer in visiting:
                raise ProvisioningError(
                    f"Feature pack dependency cycle detected at {fp_config.producer}.",
                    producer=fp_config.producer,
                )
            visiting.add(fp_config.producer)
            archive = locate(fp_config)
            descriptor = self.load_descriptor(archive)
            if descriptor.producer != fp_config.producer:
                raise ProvisioningError(
                    f"Archive for {fp_config.producer} declares producer {descriptor.producer}.",
                    producer=fp_config.producer,
                )
            for dependency in descriptor.dependencies:
                visit(declared.get(dependency) or FeaturePackConfig(producer=dependency), True)
            visiting.discard(fp_config.producer)
            placed.add(fp_config.producer)
            ordered.append(
                LayoutFeaturePack(
                    config=fp_config,
                    descriptor=descriptor,
                    archive=archive,
                    transitive=transitive and fp_config.producer not in declared,
                )
            )

        for fp_config in config.feature_packs:
            visit(fp_config, False)
        return ProvisioningLayout(tuple(ordered))

    def provision(
        self,
        layout: ProvisioningLayout,
        config: ProvisioningConfig,
        manifest: Manifest,
        locate_artifact: ArtifactLocator,
        target: Path,
    ) -> dict[str, str]:
        """Materialise *layout* into *target* and return file ownership.

        Archives are unpacked into a scratch directory under the local cache
        (or the system temporary directory) that is removed before returning.
        """
        target.mkdir(parents=True, exist_ok=True)
        owners: dict[str, str] = {}

        with tempfile.TemporaryDirectory(prefix="fpctl-unpack-", dir=_unpack_root()) as scratch:
            for index, item in enumerate(layout.feature_packs):
                producer = item.config.producer
                unpacked = self._unpack(item, Path(scratch) / str(index))
                _copy_tree(unpacked / "content", target, producer, owners)
                selected = item.descriptor.selected_packages(item.config)
                placements = list(item.descriptor.artifacts)
                for name in selected:
                    package = item.descriptor.packages[name]
                    placements.extend(package.artifacts)
                    if package.content:
                        content = unpacked / "packages" / package.content
                        _copy_tree(content, target, producer, owners)
                for placement in placements:
                    self._place_artifact(
                        placement, manifest, locate_artifact, target, producer, owners
                    )

        layers = layout.layers_by_model()
        for config_model in config.configs:
            relative = self._write_config(config_model, layers, layout.producers, target)
            owners[relative] = CONFIG_OWNER
        return owners

    # ------------------------------------------------------------------
    def _unpack(self, item: LayoutFeaturePack, root: Path) -> Path:
        root.mkdir(parents=True, exist_ok=True)
        try:
            with zipfile.ZipFile(item.archive) as bundle:
                for member in bundle.namelist():
                    _ensure_safe_member(member, item.archive)
                bundle.extractall(root)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ProvisioningError(
                f"Unable to unpack feature pack {item.config.producer}: {exc}",
                producer=item.config.producer,
            ) from exc
        return root

    def _place_artifact(
        self,
        placement: ArtifactPlacement,
        manifest: Manifest,
        locate_artifact: ArtifactLocator,
        target: Path,
        producer: str,
        owners: dict[str, str],
    ) -> None:
        reference = placement.reference
        stream = manifest.get(reference.key)
        if stream is None:
            raise ProvisioningError(
                f"Manifest has no stream for {reference.key} required by {producer}.",
                producer=producer,
                artifact=reference.key,
            )
        source = locate_artifact(reference.with_version(stream.version))
        suffix = f"-{reference.classifier}" if reference.classifier else ""
        filename = f"{reference.artifact_id}-{stream.version}{suffix}.{reference.extension}"
        relative = str(PurePosixPath(placement.path) / filename)
        destination = target / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        owners[relative] = producer

    def _write_config(
        self,
        config_model: ConfigModel,
        layers: Mapping[str, set[str]],
        producers: Sequence[str],
        target: Path,
    ) -> str:
        model = config_model.model
        available = layers.get(model or "", set())
        for layer in config_model.included_layers:
            if layer not in available:
                raise LayerNotFoundError(
                    f"Layer '{layer}' is not provided by the provisioned feature packs.",
                    layer=layer,
                    supported_layers=available,
                )
        name = config_model.name or f"{model}.xml"
        enabled = [
            layer
            for layer in config_model.included_layers
            if layer not in config_model.excluded_layers
        ]
        lines = ['<?xml version="1.0" encoding="UTF-8"?>']
        lines.append(f"<server model={quoteattr(model or '')}>")
        for producer in producers:
            lines.append(f"    <feature-pack producer={quoteattr(producer)}/>")
        for layer in enabled:
            lines.append(f"    <layer name={quoteattr(layer)}/>")
        for layer in config_model.excluded_layers:
            lines.append(f"    <excluded-layer name={quoteattr(layer)}/>")
        lines.append("</server>")
        relative = str(PurePosixPath("configuration") / name)
        destination = target / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return relative


def _copy_tree(source: Path, target: Path, owner: str, owners: dict[str, str]) -> None:
    if not source.is_dir():
        return
    for path in sorted(source.rglob("*")):
        if path.is_dir():
            continue
        relative = path.relative_to(source).as_posix()
        destination = target / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, destination)
        owners[relative] = owner


def _ensure_safe_member(member: str, archive: Path) -> None:
    path = PurePosixPath(member)
    if path.is_absolute() or ".." in path.parts:
        raise ProvisioningError(
            f"Feature pack {archive.name} contains an unsafe path: {member}",
            archive=str(archive),
        )


__all__ = [
    "ArchiveProvisioningEngine",
    "ArtifactPlacement",
    "CONFIG_OWNER",
    "FeaturePackDescriptor",
    "LOCAL_CACHE_ENV",
    "LayoutFeaturePack",
    "PackageSpec",
    "ProvisioningEngine",
    "ProvisioningLayout",
    "local_cache_scope",
]
