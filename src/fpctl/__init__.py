"""fpctl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon. The tool version is also recorded inside every
installation's metadata so candidates produced by a mismatched tool can be
rejected before promotion.
"""
from __future__ import annotations

__all__ = ["METADATA_FORMAT", "__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.3.0"

# Bumped whenever the on-disk layout of ``.installation`` changes.
METADATA_FORMAT = 1


def get_version() -> str:
    """Return the current package version."""
    return __version__
