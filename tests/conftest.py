"""Shared fixtures: Maven-layout repositories, channel manifests, feature packs."""

from __future__ import annotations

import zipfile
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest
import yaml

from fpctl.config import AppConfig, load_config
from fpctl.model import Channel, ManifestCoordinate, Repository


class MavenRepoBuilder:
    """Publish artifacts into a directory laid out like a Maven repository."""

    def __init__(self, root: Path, repo_id: str = "central") -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.repository = Repository(repo_id, str(root))

    def artifact_path(
        self,
        group_id: str,
        artifact_id: str,
        version: str,
        *,
        extension: str = "jar",
        classifier: str | None = None,
    ) -> Path:
        suffix = f"-{classifier}" if classifier else ""
        return (
            self.root.joinpath(*group_id.split("."), artifact_id, version)
            / f"{artifact_id}-{version}{suffix}.{extension}"
        )

    def publish(
        self,
        group_id: str,
        artifact_id: str,
        version: str,
        *,
        extension: str = "jar",
        classifier: str | None = None,
        content: bytes | None = None,
    ) -> Path:
        path = self.artifact_path(
            group_id, artifact_id, version, extension=extension, classifier=classifier
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content or f"{group_id}:{artifact_id}:{version}".encode())
        return path

    def publish_feature_pack(
        self,
        producer: str,
        version: str,
        *,
        descriptor: Mapping[str, object] | None = None,
        content: Mapping[str, str] | None = None,
        packages: Mapping[str, Mapping[str, str]] | None = None,
    ) -> Path:
        """Write a feature-pack zip with ``feature-pack.yaml`` and ``content/`` files."""
        group_id, artifact_id = producer.split(":")
        path = self.artifact_path(group_id, artifact_id, version, extension="zip")
        path.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, object] = {"producer": producer}
        data.update(descriptor or {})
        with zipfile.ZipFile(path, "w") as bundle:
            bundle.writestr("feature-pack.yaml", yaml.safe_dump(data, sort_keys=False))
            for relative, text in (content or {}).items():
                bundle.writestr(f"content/{relative}", text)
            for package_dir, files in (packages or {}).items():
                for relative, text in files.items():
                    bundle.writestr(f"packages/{package_dir}/{relative}", text)
        return path

    def publish_channel_manifest(
        self,
        group_id: str,
        artifact_id: str,
        version: str,
        streams: Sequence[Mapping[str, object]],
    ) -> Path:
        text = yaml.safe_dump({"schemaVersion": "1.0.0", "streams": list(streams)})
        return self.publish(
            group_id,
            artifact_id,
            version,
            extension="yaml",
            classifier="manifest",
            content=text.encode("utf-8"),
        )


def write_channel_manifest(path: Path, streams: Sequence[Mapping[str, object]]) -> Path:
    """Write a channel manifest YAML file and return its path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.safe_dump({"schemaVersion": "1.0.0", "name": path.stem, "streams": list(streams)}),
        encoding="utf-8",
    )
    return path


SERVER_DESCRIPTOR: dict[str, object] = {
    "layers": {"standalone": ["base", "web"]},
    "defaultPackages": ["core-pkg"],
    "packages": {
        "core-pkg": {
            "artifacts": [{"groupId": "org.example", "artifactId": "core", "path": "modules"}]
        },
        "docs": {"content": "docs"},
    },
}

EXTRAS_DESCRIPTOR: dict[str, object] = {
    "layers": {"standalone": ["metrics"]},
    "defaultPackages": ["extras-pkg"],
    "packages": {
        "extras-pkg": {
            "artifacts": [
                {"groupId": "org.example", "artifactId": "extras-lib", "path": "modules"}
            ]
        }
    },
}

DEFAULT_STREAMS: list[dict[str, object]] = [
    {"groupId": "org.example", "artifactId": "core", "versionPattern": "[1.0.0,)"},
    {"groupId": "org.example", "artifactId": "server", "version": "1.0.0"},
    {"groupId": "org.example", "artifactId": "extras", "version": "1.0.0"},
    {"groupId": "org.example", "artifactId": "extras-lib", "versionPattern": "2\\..*"},
]


RepoFactory = Callable[[str], "MavenRepoBuilder"]


@pytest.fixture()
def repo_factory(tmp_path: Path) -> RepoFactory:
    """Return a factory creating named repositories under ``tmp_path``."""

    def build(name: str) -> MavenRepoBuilder:
        return MavenRepoBuilder(tmp_path / name, repo_id=name)

    return build


@pytest.fixture()
def maven_repo(tmp_path: Path) -> MavenRepoBuilder:
    """Return an empty Maven-layout repository under ``tmp_path``."""
    return MavenRepoBuilder(tmp_path / "repo")


@pytest.fixture()
def sample_repo(maven_repo: MavenRepoBuilder) -> MavenRepoBuilder:
    """Repository holding the ``server`` and ``extras`` feature packs and their artifacts."""
    for version in ("1.0.0", "1.0.1", "1.0.2"):
        maven_repo.publish("org.example", "core", version)
    maven_repo.publish("org.example", "extras-lib", "2.0.0")
    maven_repo.publish("org.example", "extras-lib", "3.0.0")
    maven_repo.publish_feature_pack(
        "org.example:server",
        "1.0.0",
        descriptor=SERVER_DESCRIPTOR,
        content={"bin/run.sh": "#!/bin/sh\necho run\n", "README.txt": "server\n"},
        packages={"docs": {"docs/guide.txt": "guide\n"}},
    )
    maven_repo.publish_feature_pack(
        "org.example:extras",
        "1.0.0",
        descriptor=EXTRAS_DESCRIPTOR,
        content={"docs/extras.txt": "extras\n"},
    )
    return maven_repo


@pytest.fixture()
def sample_channel(tmp_path: Path, sample_repo: MavenRepoBuilder) -> Channel:
    """Channel over ``sample_repo`` using :data:`DEFAULT_STREAMS`."""
    manifest = write_channel_manifest(tmp_path / "channels" / "main.yaml", DEFAULT_STREAMS)
    return Channel(
        manifest=ManifestCoordinate(url=str(manifest)),
        repositories=(sample_repo.repository,),
        name="main",
    )


ChannelFactory = Callable[[str, Sequence[Mapping[str, object]]], Channel]


@pytest.fixture()
def channel_factory(tmp_path: Path, sample_repo: MavenRepoBuilder) -> ChannelFactory:
    """Return a factory writing named channel manifests served by ``sample_repo``."""

    def build(name: str, streams: Sequence[Mapping[str, object]]) -> Channel:
        path = write_channel_manifest(tmp_path / "channels" / f"{name}.yaml", streams)
        return Channel(ManifestCoordinate(url=str(path)), (sample_repo.repository,), name=name)

    return build


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration keeping state, cache and staging under ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "absent-config.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "cache_dir": str(tmp_path / "cache"),
            "staging_dir": str(tmp_path / "staging"),
        },
    )
