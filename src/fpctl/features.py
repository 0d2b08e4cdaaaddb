"""Derive the next provisioning configuration for a feature-pack addition.

Everything here is pure: given the existing configuration, the request and
the layers advertised by the resolved feature packs, compute the next
:class:`~fpctl.model.ProvisioningConfig` or raise a selection/no-op error.
No file or network access happens in this module.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from .errors import FeaturePackAlreadyInstalledError, LayerNotFoundError, ModelNotDefinedError
from .model import ConfigModel, FeaturePackConfig, ProvisioningConfig


@dataclass(frozen=True, slots=True)
class FeatureAddRequest:
    """A request to add (or re-configure) one feature pack."""

    coordinate: str
    layers: tuple[str, ...] = ()
    model: str | None = None
    config_name: str | None = None

    @property
    def feature_pack(self) -> FeaturePackConfig:
        """Return the feature-pack entry described by :attr:`coordinate`."""
        parts = [part.strip() for part in self.coordinate.split(":")]
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(
                f"Feature pack '{self.coordinate}' must be <groupId>:<artifactId>[:<version>]."
            )
        return FeaturePackConfig(
            producer=f"{parts[0]}:{parts[1]}",
            version=parts[2] if len(parts) == 3 else None,
        )


def select_model(requested: str | None, layers_by_model: Mapping[str, Iterable[str]]) -> str:
    """Return the layer model to configure.

    Without an explicit request the only advertised model is used; when the
    feature packs advertise none or several, :class:`ModelNotDefinedError`
    carries the legal set.
    """
    models = sorted(layers_by_model)
    if requested is not None:
        if requested not in layers_by_model:
            raise ModelNotDefinedError(
                f"Model '{requested}' is not defined by the feature packs.",
                model=requested,
                supported_models=models,
            )
        return requested
    if len(models) == 1:
        return models[0]
    if not models:
        raise ModelNotDefinedError(
            "The feature packs do not define any layer model.",
            supported_models=models,
        )
    raise ModelNotDefinedError(
        "More than one layer model is available; select one explicitly.",
        supported_models=models,
    )


def verify_layers(layers: Iterable[str], supported: Iterable[str]) -> None:
    """Raise :class:`LayerNotFoundError` for the first unsupported layer."""
    legal = set(supported)
    for layer in layers:
        if layer not in legal:
            raise LayerNotFoundError(
                f"Layer '{layer}' is not supported by the feature pack.",
                layer=layer,
                supported_layers=legal,
            )


def build_config_model(
    request: FeatureAddRequest,
    layers_by_model: Mapping[str, Iterable[str]],
) -> ConfigModel | None:
    """Return the configuration the request selects.

    Whenever the feature packs advertise layers a model is selected and a
    config is returned, possibly with no layers. ``None`` means no layer model
    exists at all.
    """
    if not layers_by_model:
        verify_layers(request.layers, ())
        return None
    model = select_model(request.model, layers_by_model)
    verify_layers(request.layers, layers_by_model[model])
    return ConfigModel(
        model=model,
        name=request.config_name or f"{model}.xml",
        included_layers=tuple(request.layers),
    )


def apply_feature_add(
    existing: ProvisioningConfig,
    feature_pack: FeaturePackConfig,
    config_model: ConfigModel | None = None,
) -> ProvisioningConfig:
    """Return *existing* with *feature_pack* (and optional layers) applied.

    A producer already present is replaced rather than duplicated, keeping its
    package selection. A new producer is added without inheriting default
    configs or packages, so only the requested layers get configured.
    Requested layers are merged into a config model with the same
    ``(model, name)`` and removed from its excluded layers. Raises
    :class:`FeaturePackAlreadyInstalledError` when nothing would change.
    """
    current = existing.get_feature_pack(feature_pack.producer)
    if current is not None:
        entry = FeaturePackConfig(
            producer=current.producer,
            version=feature_pack.version or current.version,
            inherit_packages=current.inherit_packages,
            inherit_configs=current.inherit_configs,
            included_packages=current.included_packages,
            excluded_packages=current.excluded_packages,
        )
    else:
        entry = FeaturePackConfig(
            producer=feature_pack.producer,
            version=feature_pack.version,
            inherit_packages=False,
            inherit_configs=False,
            included_packages=feature_pack.included_packages,
            excluded_packages=feature_pack.excluded_packages,
        )
    updated = existing.with_feature_pack(entry)

    if config_model is not None:
        previous = existing.get_config(config_model.model, config_model.name)
        if previous is not None:
            requested = set(config_model.included_layers)
            config_model = ConfigModel(
                model=previous.model,
                name=previous.name,
                included_layers=tuple(set(previous.included_layers) | requested),
                excluded_layers=tuple(set(previous.excluded_layers) - requested),
            )
        updated = updated.with_config(config_model)

    if updated == existing:
        raise FeaturePackAlreadyInstalledError(
            f"Feature pack {feature_pack.producer} is already installed with the requested "
            "configuration.",
            producer=feature_pack.producer,
        )
    return updated


__all__ = [
    "FeatureAddRequest",
    "apply_feature_add",
    "build_config_model",
    "select_model",
    "verify_layers",
]
