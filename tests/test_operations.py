"""End-to-end tests for :class:`InstallationManager` operations."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest
import yaml

from fpctl.config import AppConfig
from fpctl.errors import FailureKind
from fpctl.features import FeatureAddRequest
from fpctl.metadata import InstallationMetadataStore
from fpctl.model import Channel, ConfigModel, FeaturePackConfig, Repository
from fpctl.operations import InstallationManager, OperationResult, ProvisioningDefinition


@pytest.fixture()
def manager(app_config: AppConfig) -> InstallationManager:
    return InstallationManager(app_config)


@pytest.fixture()
def installed(
    manager: InstallationManager, sample_channel: Channel, tmp_path: Path
) -> Path:
    """A server installation provisioned from ``sample_channel``."""
    target = tmp_path / "server"
    result = manager.provision(
        target, ProvisioningDefinition.from_coordinate("org.example:server", [sample_channel])
    )
    assert result.ok, result.failure
    return target


def _version(result: OperationResult, key: str) -> str | None:
    assert result.manifest is not None
    stream = result.manifest.get(key)
    return stream.version if stream is not None else None


def _edit_streams(channel: Channel, edit: Any) -> None:
    """Rewrite the manifest file behind *channel* with *edit* applied to its streams."""
    path = Path(str(channel.manifest.url))
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    document["streams"] = edit(document["streams"])
    path.write_text(yaml.safe_dump(document), encoding="utf-8")


def test_provision_installs_latest_versions(installed: Path, sample_channel: Channel) -> None:
    metadata = InstallationMetadataStore().load(installed)

    core = metadata.manifest.get("org.example:core")
    assert core is not None and core.version == "1.0.2"
    assert metadata.channels == (sample_channel,)
    assert metadata.provisioning_config.producers == ["org.example:server"]
    assert (installed / "modules" / "core-1.0.2.jar").is_file()
    assert (installed / "bin" / "run.sh").is_file()
    assert not (installed / "docs").exists()


def test_provision_leaves_no_staging_behind(installed: Path, app_config: AppConfig) -> None:
    assert app_config.staging_dir is not None
    assert list(app_config.staging_dir.iterdir()) == []
    assert sorted(p.name for p in installed.parent.iterdir() if "fpctl-" in p.name) == []
    assert os.environ.get("FPCTL_LOCAL_CACHE") != str(app_config.cache_dir)


def test_updates_leave_no_unpacked_feature_packs_in_cache(
    manager: InstallationManager, installed: Path, sample_repo: Any, app_config: AppConfig
) -> None:
    sample_repo.publish("org.example", "core", "1.0.3")

    assert manager.perform_update(installed).ok

    assert list((app_config.cache_dir / "feature-packs").iterdir()) == []


def test_provision_into_existing_directory_fails(
    manager: InstallationManager, installed: Path, sample_channel: Channel
) -> None:
    result = manager.provision(
        installed, ProvisioningDefinition.from_coordinate("org.example:server", [sample_channel])
    )

    assert not result.ok
    assert result.failure is not None
    assert result.failure.kind is FailureKind.SELECTION


def test_provision_requires_channels(manager: InstallationManager, tmp_path: Path) -> None:
    result = manager.provision(
        tmp_path / "server", ProvisioningDefinition.from_coordinate("org.example:server", [])
    )

    assert result.failure is not None
    assert result.failure.kind is FailureKind.SELECTION
    assert not (tmp_path / "server").exists()


def test_provision_from_definition_file(
    manager: InstallationManager, sample_channel: Channel, tmp_path: Path
) -> None:
    definition_file = tmp_path / "definition.yaml"
    definition_file.write_text(
        "featurePacks:\n"
        "  - location: org.example:server\n"
        "    includedPackages: [docs]\n"
        "configs:\n"
        "  - {model: standalone, name: standalone.xml, layers: [web]}\n"
    )
    definition = ProvisioningDefinition.from_file(definition_file, [sample_channel])

    result = manager.provision(tmp_path / "server", definition)

    assert result.ok, result.failure
    assert (tmp_path / "server" / "docs" / "guide.txt").is_file()
    assert (tmp_path / "server" / "configuration" / "standalone.xml").is_file()


def test_definition_file_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("- a list\n")

    with pytest.raises(ValueError):
        ProvisioningDefinition.from_file(broken)
    with pytest.raises(ValueError):
        ProvisioningDefinition.from_file(tmp_path / "missing.yaml")


def test_unavailable_artifacts_fail_with_resolution(
    manager: InstallationManager, tmp_path: Path, sample_channel: Channel
) -> None:
    result = manager.provision(
        tmp_path / "server",
        ProvisioningDefinition.from_coordinate("org.example:absent", [sample_channel]),
    )

    assert result.failure is not None
    assert result.failure.kind is FailureKind.RESOLUTION
    assert result.failure.details["unresolved"] == ["org.example:absent"]


def test_list_and_perform_update(
    manager: InstallationManager, installed: Path, sample_repo: Any
) -> None:
    sample_repo.publish("org.example", "core", "1.0.3")

    listed = manager.list_updates(installed)

    assert listed.ok
    assert listed.change_set is not None
    assert [c.to_dict() for c in listed.change_set.artifact_changes] == [
        {"artifact": "org.example:core", "from": "1.0.2", "to": "1.0.3"}
    ]
    assert not (installed / "modules" / "core-1.0.3.jar").exists()

    dry = manager.perform_update(installed, dry_run=True)
    assert dry.ok and dry.details["dry_run"] is True
    assert not (installed / "modules" / "core-1.0.3.jar").exists()

    updated = manager.perform_update(installed)

    assert updated.ok, updated.failure
    assert _version(updated, "org.example:core") == "1.0.3"
    assert (installed / "modules" / "core-1.0.3.jar").is_file()
    assert not (installed / "modules" / "core-1.0.2.jar").exists()

    again = manager.perform_update(installed)
    assert again.failure is not None
    assert again.failure.kind is FailureKind.NO_OP


def test_update_keeps_local_modifications(
    manager: InstallationManager, installed: Path, sample_repo: Any
) -> None:
    (installed / "README.txt").write_text("edited locally\n")
    sample_repo.publish("org.example", "core", "1.0.3")

    result = manager.perform_update(installed)

    assert result.ok, result.failure
    assert (installed / "README.txt").read_text() == "edited locally\n"
    assert result.details["preserved"] == ["README.txt"]
    assert result.details["conflicts"] == []


def test_feature_add_configures_layers_and_keeps_versions(
    manager: InstallationManager, installed: Path, sample_repo: Any
) -> None:
    sample_repo.publish("org.example", "core", "1.0.3")
    request = FeatureAddRequest("org.example:extras", layers=("metrics",))

    result = manager.add_feature_pack(installed, request)

    assert result.ok, result.failure
    assert result.change_set is not None
    assert result.change_set.added_feature_packs == ("org.example:extras",)
    assert _version(result, "org.example:core") == "1.0.2"
    assert (installed / "docs" / "extras.txt").read_text() == "extras\n"
    assert (installed / "modules" / "core-1.0.2.jar").is_file()
    xml = (installed / "configuration" / "standalone.xml").read_text()
    assert '<layer name="metrics"/>' in xml
    metadata = InstallationMetadataStore().load(installed)
    extras = metadata.provisioning_config.get_feature_pack("org.example:extras")
    assert extras == FeaturePackConfig(
        "org.example:extras", inherit_packages=False, inherit_configs=False
    )


def test_feature_add_dry_run_leaves_installation_untouched(
    manager: InstallationManager, installed: Path
) -> None:
    request = FeatureAddRequest("org.example:extras", layers=("metrics",))

    result = manager.add_feature_pack(installed, request, dry_run=True)

    assert result.ok
    assert result.details["dry_run"] is True
    assert not (installed / "docs" / "extras.txt").exists()
    metadata = InstallationMetadataStore().load(installed)
    assert metadata.provisioning_config.producers == ["org.example:server"]


@pytest.mark.parametrize(
    ("request_", "kind", "detail"),
    [
        (
            FeatureAddRequest("org.example:extras", layers=("bogus",)),
            FailureKind.SELECTION,
            ("supported_layers", ["metrics"]),
        ),
        (
            FeatureAddRequest("org.example:extras", layers=("metrics",), model="domain"),
            FailureKind.SELECTION,
            ("supported_models", ["standalone"]),
        ),
        (
            FeatureAddRequest("org.example:absent"),
            FailureKind.RESOLUTION,
            ("unresolved", ["org.example:absent"]),
        ),
    ],
)
def test_feature_add_failures(
    manager: InstallationManager,
    installed: Path,
    request_: FeatureAddRequest,
    kind: FailureKind,
    detail: tuple[str, object],
) -> None:
    result = manager.add_feature_pack(installed, request_)

    assert not result.ok
    assert result.failure is not None
    assert result.failure.kind is kind
    key, value = detail
    assert result.failure.details[key] == value
    assert InstallationMetadataStore().load(installed).provisioning_config.producers == [
        "org.example:server"
    ]


def test_feature_add_without_layers_configures_the_only_model(
    manager: InstallationManager, installed: Path
) -> None:
    result = manager.add_feature_pack(installed, FeatureAddRequest("org.example:server"))

    assert result.ok, result.failure
    assert result.details["config"] == {"model": "standalone", "name": "standalone.xml"}
    configs = InstallationMetadataStore().load(installed).provisioning_config.configs
    assert configs == (ConfigModel("standalone", "standalone.xml"),)
    assert (installed / "configuration" / "standalone.xml").is_file()

    again = manager.add_feature_pack(installed, FeatureAddRequest("org.example:server"))

    assert again.failure is not None
    assert again.failure.kind is FailureKind.NO_OP
    assert again.failure.details["producer"] == "org.example:server"


def test_feature_add_with_several_models_requires_a_choice(
    manager: InstallationManager, installed: Path, sample_repo: Any, sample_channel: Channel
) -> None:
    sample_repo.publish_feature_pack(
        "org.example:multi",
        "1.0.0",
        descriptor={"layers": {"standalone": ["web"], "domain": ["host"]}},
    )
    _edit_streams(
        sample_channel,
        lambda streams: [
            *streams,
            {"groupId": "org.example", "artifactId": "multi", "version": "1.0.0"},
        ],
    )

    result = manager.add_feature_pack(installed, FeatureAddRequest("org.example:multi"))

    assert result.failure is not None
    assert result.failure.kind is FailureKind.SELECTION
    assert result.failure.details["supported_models"] == ["domain", "standalone"]
    assert InstallationMetadataStore().load(installed).provisioning_config.producers == [
        "org.example:server"
    ]


def test_malformed_range_in_channel_is_a_channel_failure(
    manager: InstallationManager, installed: Path, sample_channel: Channel
) -> None:
    _edit_streams(
        sample_channel,
        lambda streams: [
            {**stream, "versionPattern": "(unclosed"}
            if stream["artifactId"] == "core"
            else stream
            for stream in streams
        ],
    )

    result = manager.list_updates(installed)

    assert not result.ok
    assert result.failure is not None
    assert result.failure.kind is FailureKind.CHANNEL_CONFIG
    assert "(unclosed" in result.failure.message


def test_malformed_feature_pack_dependency_is_a_staging_failure(
    manager: InstallationManager, sample_repo: Any, sample_channel: Channel, tmp_path: Path
) -> None:
    sample_repo.publish_feature_pack(
        "org.example:broken", "1.0.0", descriptor={"dependencies": ["not-a-producer"]}
    )
    _edit_streams(
        sample_channel,
        lambda streams: [
            *streams,
            {"groupId": "org.example", "artifactId": "broken", "version": "1.0.0"},
        ],
    )

    result = manager.provision(
        tmp_path / "broken",
        ProvisioningDefinition.from_coordinate("org.example:broken", [sample_channel]),
    )

    assert result.failure is not None
    assert result.failure.kind is FailureKind.STAGING
    assert "not-a-producer" in result.failure.message
    assert not (tmp_path / "broken").exists()


def test_operations_on_missing_installation(
    manager: InstallationManager, tmp_path: Path
) -> None:
    result = manager.list_updates(tmp_path / "nowhere")

    assert result.failure is not None
    assert result.failure.kind is FailureKind.METADATA


def test_export_and_restore(
    manager: InstallationManager, installed: Path, sample_repo: Any, tmp_path: Path
) -> None:
    exported = manager.export_metadata(installed, tmp_path / "bundle.zip")
    assert exported.ok
    assert exported.details["bundle"] == str(tmp_path / "bundle.zip")
    sample_repo.publish("org.example", "core", "1.0.3")

    restored = manager.restore(tmp_path / "copy", tmp_path / "bundle.zip")

    assert restored.ok, restored.failure
    assert _version(restored, "org.example:core") == "1.0.2"
    assert (tmp_path / "copy" / "modules" / "core-1.0.2.jar").is_file()
    store = InstallationMetadataStore()
    assert store.load(tmp_path / "copy") == store.load(installed)


def test_restore_with_repository_override(
    manager: InstallationManager, installed: Path, sample_repo: Any, tmp_path: Path
) -> None:
    manager.export_metadata(installed, tmp_path / "bundle.zip")
    mirror = Repository("mirror", str(sample_repo.root))

    restored = manager.restore(tmp_path / "copy", tmp_path / "bundle.zip", repositories=[mirror])

    assert restored.ok, restored.failure
    metadata = InstallationMetadataStore().load(tmp_path / "copy")
    assert [repo.id for repo in metadata.channels[0].repositories] == ["central"]


def test_restore_missing_bundle(manager: InstallationManager, tmp_path: Path) -> None:
    result = manager.restore(tmp_path / "copy", tmp_path / "missing.zip")

    assert result.failure is not None
    assert result.failure.kind is FailureKind.METADATA
    assert not (tmp_path / "copy").exists()


def test_is_feature_pack_available(manager: InstallationManager, sample_channel: Channel) -> None:
    extras = FeaturePackConfig("org.example:extras")
    assert manager.is_feature_pack_available(extras, [sample_channel])
    assert not manager.is_feature_pack_available(
        FeaturePackConfig("org.example:absent"), [sample_channel]
    )


def test_clean_staging_uses_configured_root(
    manager: InstallationManager, app_config: AppConfig
) -> None:
    assert app_config.staging_dir is not None
    stale = app_config.staging_dir / "fpctl-candidate-stale"
    stale.mkdir(parents=True)
    os.utime(stale, (0, 0))

    assert manager.clean_staging() == [stale]
    assert manager.clean_staging(max_age_hours=1) == []
