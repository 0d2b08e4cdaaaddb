"""Compare recorded installation state with a candidate's."""
from __future__ import annotations

from dataclasses import dataclass

from .model import Manifest, ProvisioningConfig


@dataclass(frozen=True, slots=True)
class ArtifactChange:
    """One artifact whose version differs between two manifests.

    ``old_version`` is ``None`` for added artifacts and ``new_version`` is
    ``None`` for removed ones.
    """

    key: str
    old_version: str | None
    new_version: str | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"artifact": self.key, "from": self.old_version, "to": self.new_version}


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Artifacts and feature packs that differ between two installation states."""

    added: tuple[ArtifactChange, ...] = ()
    updated: tuple[ArtifactChange, ...] = ()
    removed: tuple[ArtifactChange, ...] = ()
    added_feature_packs: tuple[str, ...] = ()
    removed_feature_packs: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when nothing changed."""
        return not (
            self.added
            or self.updated
            or self.removed
            or self.added_feature_packs
            or self.removed_feature_packs
        )

    @property
    def artifact_changes(self) -> list[ArtifactChange]:
        """Return every artifact change (added, updated, removed)."""
        return [*self.added, *self.updated, *self.removed]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "added": [change.to_dict() for change in self.added],
            "updated": [change.to_dict() for change in self.updated],
            "removed": [change.to_dict() for change in self.removed],
            "added_feature_packs": list(self.added_feature_packs),
            "removed_feature_packs": list(self.removed_feature_packs),
        }


def diff(
    old_manifest: Manifest,
    new_manifest: Manifest,
    old_config: ProvisioningConfig,
    new_config: ProvisioningConfig,
) -> ChangeSet:
    """Return the changes turning the old state into the new one.

    Added and updated entries follow the new manifest's order; removed entries
    follow the old manifest's order.
    """
    added: list[ArtifactChange] = []
    updated: list[ArtifactChange] = []
    for stream in new_manifest:
        previous = old_manifest.get(stream.key)
        if previous is None:
            added.append(ArtifactChange(stream.key, None, stream.version))
        elif previous.version != stream.version:
            updated.append(ArtifactChange(stream.key, previous.version, stream.version))
    removed = [
        ArtifactChange(stream.key, stream.version, None)
        for stream in old_manifest
        if stream.key not in new_manifest
    ]

    old_producers = old_config.producers
    new_producers = new_config.producers
    return ChangeSet(
        added=tuple(added),
        updated=tuple(updated),
        removed=tuple(removed),
        added_feature_packs=tuple(p for p in new_producers if p not in old_producers),
        removed_feature_packs=tuple(p for p in old_producers if p not in new_producers),
    )


__all__ = ["ArtifactChange", "ChangeSet", "diff"]
