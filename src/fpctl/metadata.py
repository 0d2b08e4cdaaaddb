"""Persisted installation metadata.

Every installation carries a hidden ``.installation`` directory recording what
is installed: the resolved manifest, the ordered channel list, the
provisioning configuration and the repositories used for resolution. Two
bookkeeping files sit beside them: ``files.yaml`` maps each installed file to
its checksum and owning feature pack, and ``tool.yaml`` names the tool version
and metadata format that produced the tree.

Each file is written atomically (temporary file in the same directory followed
by ``os.replace``). During promotion the whole directory is written into the
next-state tree before the swap, so readers never see a mix of old and new
records.
"""
from __future__ import annotations

import hashlib
import os
import tempfile
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from . import METADATA_FORMAT, __version__
from .errors import MetadataError
from .model import Channel, InstallationMetadata, Manifest, ProvisioningConfig, Repository

METADATA_DIR = ".installation"
MANIFEST_FILE = "manifest.yaml"
CHANNELS_FILE = "installer-channels.yaml"
PROVISIONING_FILE = "provisioning.yaml"
REPOSITORIES_FILE = "repositories.yaml"
FILES_FILE = "files.yaml"
TOOL_FILE = "tool.yaml"
TOOL_NAME = "fpctl"

BUNDLE_MEMBERS = (MANIFEST_FILE, CHANNELS_FILE, PROVISIONING_FILE, REPOSITORIES_FILE)


@dataclass(frozen=True, slots=True)
class FileRecord:
    """Checksum and owner of one installed file."""

    sha256: str
    owner: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"sha256": self.sha256, "owner": self.owner}


@dataclass(frozen=True, slots=True)
class ToolMarker:
    """Identity of the tool that wrote an installation's metadata."""

    tool: str
    version: str
    format: int

    @classmethod
    def current(cls) -> ToolMarker:
        """Return the marker for the running tool."""
        return cls(tool=TOOL_NAME, version=__version__, format=METADATA_FORMAT)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"tool": self.tool, "version": self.version, "format": self.format}


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


class InstallationMetadataStore:
    """Read and write the ``.installation`` records of an installation."""

    def metadata_dir(self, install_dir: Path) -> Path:
        """Return the metadata directory of *install_dir*."""
        return install_dir / METADATA_DIR

    def exists(self, install_dir: Path) -> bool:
        """Return ``True`` when *install_dir* carries a manifest record."""
        return (self.metadata_dir(install_dir) / MANIFEST_FILE).is_file()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load(self, install_dir: Path) -> InstallationMetadata:
        """Return the recorded metadata.

        Raises :class:`MetadataError` when the records are absent or corrupt.
        """
        root = self.metadata_dir(install_dir)
        if not self.exists(install_dir):
            raise MetadataError(
                f"No installation metadata found in {install_dir}.",
                install_dir=str(install_dir),
            )
        documents: dict[str, str] = {}
        for name in BUNDLE_MEMBERS:
            path = root / name
            if not path.is_file():
                continue
            try:
                documents[name] = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise MetadataError(
                    f"Unable to read {path}: {exc}", install_dir=str(install_dir)
                ) from exc
        return _parse_documents(documents, source=str(root))

    def read_files(self, install_dir: Path) -> dict[str, FileRecord]:
        """Return the recorded file ownership (empty when not recorded)."""
        raw = self._read_yaml(self.metadata_dir(install_dir) / FILES_FILE)
        if raw is None:
            return {}
        files = raw.get("files") if isinstance(raw, Mapping) else None
        if not isinstance(files, Mapping):
            raise MetadataError(f"{FILES_FILE} in {install_dir} is malformed.")
        records: dict[str, FileRecord] = {}
        for relative, entry in files.items():
            if not isinstance(entry, Mapping) or "sha256" not in entry:
                raise MetadataError(f"{FILES_FILE} entry for {relative} is malformed.")
            records[str(relative)] = FileRecord(
                sha256=str(entry["sha256"]),
                owner=str(entry.get("owner") or ""),
            )
        return records

    def read_tool_marker(self, install_dir: Path) -> ToolMarker | None:
        """Return the tool marker, or ``None`` when the tree has none."""
        raw = self._read_yaml(self.metadata_dir(install_dir) / TOOL_FILE)
        if raw is None:
            return None
        if not isinstance(raw, Mapping):
            raise MetadataError(f"{TOOL_FILE} in {install_dir} is malformed.")
        try:
            return ToolMarker(
                tool=str(raw["tool"]),
                version=str(raw["version"]),
                format=int(raw["format"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MetadataError(f"{TOOL_FILE} in {install_dir} is malformed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    def write(
        self,
        install_dir: Path,
        metadata: InstallationMetadata,
        *,
        files: Mapping[str, FileRecord] | None = None,
    ) -> None:
        """Atomically persist *metadata* (and optionally the file records)."""
        root = self.metadata_dir(install_dir)
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MetadataError(f"Unable to create {root}: {exc}") from exc
        self._write_yaml(root, MANIFEST_FILE, metadata.manifest.to_dict())
        self._write_yaml(root, CHANNELS_FILE, [channel.to_dict() for channel in metadata.channels])
        self._write_yaml(root, PROVISIONING_FILE, metadata.provisioning_config.to_dict())
        repositories = [repo.to_dict() for repo in metadata.repositories]
        self._write_yaml(root, REPOSITORIES_FILE, repositories)
        if files is not None:
            self.write_files(install_dir, files)
        self._write_yaml(root, TOOL_FILE, ToolMarker.current().to_dict())

    def write_files(self, install_dir: Path, files: Mapping[str, FileRecord]) -> None:
        """Persist the file ownership record."""
        payload = {"files": {path: files[path].to_dict() for path in sorted(files)}}
        self._write_yaml(self.metadata_dir(install_dir), FILES_FILE, payload)

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------
    def export_bundle(self, install_dir: Path, bundle_path: Path) -> tuple[Path, str]:
        """Write the metadata of *install_dir* into a zip bundle.

        Returns the bundle path and its SHA-256 checksum; a ``.sha256``
        sidecar is written next to the bundle.
        """
        self.load(install_dir)
        root = self.metadata_dir(install_dir)
        bundle_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(bundle_path.parent), prefix=f".{bundle_path.name}."
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle, zipfile.ZipFile(
                handle, "w", compression=zipfile.ZIP_DEFLATED
            ) as bundle:
                for name in BUNDLE_MEMBERS:
                    path = root / name
                    if path.is_file():
                        bundle.write(path, arcname=name)
            os.replace(tmp_path, bundle_path)
            os.chmod(bundle_path, 0o640)
        except OSError as exc:
            raise MetadataError(f"Unable to write bundle {bundle_path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        checksum = compute_checksum(bundle_path)
        write_checksum_file(bundle_path, checksum)
        return bundle_path, checksum

    def import_bundle(self, archive: Path) -> InstallationMetadata:
        """Return the metadata stored in a bundle written by :meth:`export_bundle`."""
        if not archive.is_file():
            raise MetadataError(f"Bundle {archive} does not exist.", bundle=str(archive))
        sidecar = archive.with_name(f"{archive.name}.sha256")
        if sidecar.is_file():
            expected = sidecar.read_text(encoding="utf-8").split()[:1]
            if expected and expected[0] != compute_checksum(archive):
                raise MetadataError(
                    f"Checksum mismatch for bundle {archive}.",
                    bundle=str(archive),
                )
        documents: dict[str, str] = {}
        try:
            with zipfile.ZipFile(archive) as bundle:
                names = set(bundle.namelist())
                for name in BUNDLE_MEMBERS:
                    if name in names:
                        documents[name] = bundle.read(name).decode("utf-8")
        except (OSError, zipfile.BadZipFile, UnicodeDecodeError) as exc:
            raise MetadataError(
                f"Unable to read bundle {archive}: {exc}", bundle=str(archive)
            ) from exc
        if MANIFEST_FILE not in documents:
            raise MetadataError(f"Bundle {archive} has no {MANIFEST_FILE}.", bundle=str(archive))
        return _parse_documents(documents, source=str(archive))

    # ------------------------------------------------------------------
    def _read_yaml(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise MetadataError(f"Failed to read metadata file {path}: {exc}") from exc

    def _write_yaml(self, root: Path, name: str, payload: object) -> None:
        path = root / name
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(root), prefix=f".{name}.")
        except OSError as exc:
            raise MetadataError(f"Unable to write {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise MetadataError(f"Unable to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _parse_documents(documents: Mapping[str, str], *, source: str) -> InstallationMetadata:
    try:
        manifest_raw = yaml.safe_load(documents.get(MANIFEST_FILE, "")) or {}
        channels_raw = yaml.safe_load(documents.get(CHANNELS_FILE, "")) or []
        config_raw = yaml.safe_load(documents.get(PROVISIONING_FILE, "")) or {}
        repositories_raw = yaml.safe_load(documents.get(REPOSITORIES_FILE, "")) or []
    except yaml.YAMLError as exc:
        raise MetadataError(f"Corrupt installation metadata in {source}: {exc}") from exc

    try:
        if not isinstance(channels_raw, list) or not isinstance(repositories_raw, list):
            raise ValueError("channel and repository records must be lists")
        return InstallationMetadata(
            manifest=Manifest.from_dict(manifest_raw),
            channels=tuple(Channel.from_dict(item) for item in channels_raw),
            provisioning_config=ProvisioningConfig.from_dict(config_raw),
            repositories=tuple(Repository.from_dict(item) for item in repositories_raw),
        )
    except ValueError as exc:
        raise MetadataError(f"Corrupt installation metadata in {source}: {exc}") from exc


__all__ = [
    "BUNDLE_MEMBERS",
    "FileRecord",
    "InstallationMetadataStore",
    "METADATA_DIR",
    "ToolMarker",
    "compute_checksum",
    "write_checksum_file",
]
