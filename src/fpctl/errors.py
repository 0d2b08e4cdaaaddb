"""Failure taxonomy shared by the update engine.

Every failure the engine can report is a subclass of :class:`FpctlError`
carrying a :class:`FailureKind` tag and a structured payload. Components raise
these internally; :mod:`fpctl.operations` converts them into
:class:`OperationFailure` values returned to the caller so the CLI (or any
other front-end) can branch on ``failure.kind`` and render the diagnostic
payload without parsing messages.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import ClassVar


class FailureKind(str, Enum):
    """Kinds of failures surfaced to callers."""

    RESOLUTION = "resolution"
    CHANNEL_CONFIG = "channel-config"
    SELECTION = "selection"
    NO_OP = "no-op"
    STAGING = "staging"
    PROMOTION = "promotion"
    METADATA = "metadata"


@dataclass(frozen=True, slots=True)
class OperationFailure:
    """Tagged, JSON-serialisable description of a failed operation."""

    kind: FailureKind
    message: str
    error: str
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.value,
            "error": self.error,
            "message": self.message,
            "details": _jsonable(self.details),
        }


class FpctlError(RuntimeError):
    """Base class for domain failures raised by fpctl components."""

    kind: ClassVar[FailureKind] = FailureKind.STAGING

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, object] = dict(details)

    @property
    def failure(self) -> OperationFailure:
        """Return the tagged failure value for this error."""
        return OperationFailure(
            kind=self.kind,
            message=self.message,
            error=type(self).__name__,
            details=dict(self.details),
        )


class ArtifactResolutionError(FpctlError):
    """Raised when no repository yields a required artifact or version."""

    kind = FailureKind.RESOLUTION

    def __init__(
        self,
        message: str,
        *,
        unresolved: Iterable[str] = (),
        attempted_repositories: Iterable[str] = (),
        transport_failure: bool = True,
    ) -> None:
        self.unresolved = tuple(unresolved)
        self.attempted_repositories = tuple(attempted_repositories)
        self.transport_failure = transport_failure
        super().__init__(
            message,
            unresolved=list(self.unresolved),
            attempted_repositories=list(self.attempted_repositories),
            transport_failure=transport_failure,
        )


class NoStreamFoundError(ArtifactResolutionError):
    """Raised when every repository answered but none offered the artifact."""

    def __init__(
        self,
        message: str,
        *,
        unresolved: Iterable[str] = (),
        attempted_repositories: Iterable[str] = (),
    ) -> None:
        super().__init__(
            message,
            unresolved=unresolved,
            attempted_repositories=attempted_repositories,
            transport_failure=False,
        )


class MetadataError(FpctlError):
    """Raised when installation or channel metadata is missing or corrupt."""

    kind = FailureKind.METADATA


class ChannelConfigError(MetadataError):
    """Raised when a channel's manifest cannot be loaded or parsed."""

    kind = FailureKind.CHANNEL_CONFIG


class OperationError(FpctlError):
    """Base class for failures caused by an unsupported request."""

    kind = FailureKind.SELECTION


class LayerNotFoundError(OperationError):
    """Raised when a requested layer is not offered by the feature pack."""

    def __init__(self, message: str, *, layer: str, supported_layers: Iterable[str]) -> None:
        self.layer = layer
        self.supported_layers = tuple(sorted(supported_layers))
        super().__init__(message, layer=layer, supported_layers=list(self.supported_layers))


class ModelNotDefinedError(OperationError):
    """Raised when the layer model is unknown or cannot be chosen by default."""

    def __init__(
        self,
        message: str,
        *,
        supported_models: Iterable[str],
        model: str | None = None,
    ) -> None:
        self.model = model
        self.supported_models = tuple(sorted(supported_models))
        super().__init__(message, model=model, supported_models=list(self.supported_models))


class FeaturePackAlreadyInstalledError(OperationError):
    """Raised when adding a feature pack would not change the installation."""

    kind = FailureKind.NO_OP

    def __init__(self, message: str, *, producer: str) -> None:
        self.producer = producer
        super().__init__(message, producer=producer)


class NoChangesError(OperationError):
    """Raised when an update would leave the installation unchanged."""

    kind = FailureKind.NO_OP


class ProvisioningError(FpctlError):
    """Raised when staging a candidate installation fails."""

    kind = FailureKind.STAGING


class PromotionError(FpctlError):
    """Raised when a candidate could not be promoted; the live tree is untouched."""

    kind = FailureKind.PROMOTION


class InvalidUpdateCandidateError(PromotionError):
    """Raised when a directory is not a usable candidate."""

    def __init__(self, message: str, *, candidate: Path, reason: str) -> None:
        self.candidate = candidate
        self.reason = reason
        super().__init__(message, candidate=str(candidate), reason=reason)


def _jsonable(value: object) -> object:
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_jsonable(item) for item in value]
        return sorted(items, key=str) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, Path):
        return str(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


__all__ = [
    "ArtifactResolutionError",
    "ChannelConfigError",
    "FailureKind",
    "FeaturePackAlreadyInstalledError",
    "FpctlError",
    "InvalidUpdateCandidateError",
    "LayerNotFoundError",
    "MetadataError",
    "ModelNotDefinedError",
    "NoChangesError",
    "NoStreamFoundError",
    "OperationError",
    "OperationFailure",
    "PromotionError",
    "ProvisioningError",
]
