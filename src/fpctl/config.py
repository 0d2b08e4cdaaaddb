"""Configuration loader for fpctl.

Values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``~/.config/fpctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``FPCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export FPCTL_LOCK_TIMEOUT=5
    export FPCTL_STAGING__MAX_AGE_HOURS=12

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .model import Repository

ENV_PREFIX = "FPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}LOCAL_CACHE",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class StagingConfig:
    """Candidate staging housekeeping."""

    max_age_hours: float = 24.0
    sweep_on_start: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_age_hours": self.max_age_hours, "sweep_on_start": self.sweep_on_start}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for fpctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    cache_dir: Path
    staging_dir: Path | None
    lock_timeout: float
    staging: StagingConfig
    repositories: tuple[Repository, ...]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "cache_dir": str(self.cache_dir),
            "staging_dir": str(self.staging_dir) if self.staging_dir is not None else None,
            "lock_timeout": self.lock_timeout,
            "staging": self.staging.to_dict(),
            "repositories": [repo.to_dict() for repo in self.repositories],
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/fpctl/config.yml",
    "state_dir": "~/.local/state/fpctl",
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "cache_dir": "~/.cache/fpctl",
    "staging_dir": None,
    "lock_timeout": 30.0,
    "staging": {
        "max_age_hours": 24.0,
        "sweep_on_start": True,
    },
    "repositories": [],
}

STAGING_KEYS = {"max_age_hours", "sweep_on_start"}
REPOSITORY_KEYS = {"id", "url"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    path = _config_path(config_file, environ)

    values: dict[str, object] = dict(DEFAULTS)
    for layer in (_read_file(path), _env_layer(environ), dict(overrides or {})):
        values = _merge(values, layer)
    values["config_file"] = str(path)

    _check_keys(values)
    return _materialise(values)


def _config_path(explicit: str | os.PathLike[str] | None, env: Mapping[str, str]) -> Path:
    chosen = explicit or env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"])
    return Path(chosen).expanduser()


def _read_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _mapping(document, str(path))


def _env_layer(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``FPCTL_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for name in sorted(env):
        if not name.startswith(ENV_PREFIX) or name in RESERVED_ENV_KEYS:
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {name} conflicts with {key}.")
            node = child
        node[keys[-1]] = _parse_scalar(env[name])
    return layer


def _parse_scalar(text: str) -> object:
    try:
        return yaml.safe_load(text.strip())
    except yaml.YAMLError:
        return text.strip()


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    merged = dict(base)
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _merge(current, _mapping(value, key))
        else:
            merged[key] = value
    return merged


def _check_keys(values: Mapping[str, object]) -> None:
    _reject_unknown(values, set(DEFAULTS), "Unknown configuration keys")
    _reject_unknown(
        _mapping(values.get("staging"), "staging"),
        STAGING_KEYS,
        "Unknown staging configuration keys",
    )
    sweep = _mapping(values.get("staging"), "staging").get("sweep_on_start")
    if sweep is not None and not isinstance(sweep, bool):
        raise ConfigError("staging.sweep_on_start must be a boolean.")
    for index, entry in enumerate(_items(values.get("repositories"), "repositories")):
        label = f"repositories[{index}]"
        _reject_unknown(_mapping(entry, label), REPOSITORY_KEYS, f"Unknown keys for {label}")


def _reject_unknown(values: Mapping[str, object], allowed: Iterable[str], message: str) -> None:
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise ConfigError(f"{message}: {', '.join(unknown)}.")


def _materialise(values: Mapping[str, object]) -> AppConfig:
    state_dir = _path(values.get("state_dir"), "state_dir")
    staging_values = _mapping(values.get("staging"), "staging")

    repositories: list[Repository] = []
    for index, entry in enumerate(_items(values.get("repositories"), "repositories")):
        try:
            repositories.append(Repository.from_dict(_mapping(entry, f"repositories[{index}]")))
        except ValueError as exc:
            raise ConfigError(f"Invalid repositories[{index}]: {exc}") from exc

    return AppConfig(
        config_file=_path(values.get("config_file"), "config_file"),
        state_dir=state_dir,
        logs_dir=_optional_path(values.get("logs_dir"), "logs_dir") or state_dir / "logs",
        runtime_dir=_optional_path(values.get("runtime_dir"), "runtime_dir") or state_dir / "run",
        cache_dir=_path(values.get("cache_dir"), "cache_dir"),
        staging_dir=_optional_path(values.get("staging_dir"), "staging_dir"),
        lock_timeout=_positive(values.get("lock_timeout"), "lock_timeout", 30.0),
        staging=StagingConfig(
            max_age_hours=_positive(
                staging_values.get("max_age_hours"), "staging.max_age_hours", 24.0
            ),
            sweep_on_start=bool(staging_values.get("sweep_on_start", True)),
        ),
        repositories=tuple(repositories),
    )


def _path(value: object, label: str) -> Path:
    path = _optional_path(value, label)
    if path is None:
        raise ConfigError(f"{label} must be a filesystem path.")
    return path


def _optional_path(value: object, label: str) -> Path | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path. Got {value!r}.")


def _positive(value: object, label: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"{label} must be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _mapping(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping. Got {type(value).__name__}.")
    if any(not isinstance(key, str) for key in value):
        raise ConfigError(f"{label} must use string keys.")
    return dict(value)


def _items(value: object, label: str) -> list[object]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{label} must be a list. Got {type(value).__name__}.")
    return list(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "StagingConfig",
    "load_config",
]
