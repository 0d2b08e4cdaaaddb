"""Tests for the fpctl command line interface."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import pytest
import typer
import yaml
from typer.testing import CliRunner, Result

from fpctl import __version__
from fpctl.cli import _require_change_set, app
from fpctl.exit_codes import ExitCode
from fpctl.logging import OperationScope
from fpctl.metadata import InstallationMetadataStore
from fpctl.operations import OperationResult

runner = CliRunner()


def _extract_json(output: str) -> dict[str, Any]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _operations(state_dir: Path) -> list[dict[str, Any]]:
    log = state_dir / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log.read_text().splitlines() if line.strip()]


@pytest.fixture()
def cli_env(tmp_path: Path, sample_repo: Any) -> dict[str, str]:
    """Environment pointing fpctl at a config file under ``tmp_path``."""
    config_file = tmp_path / "config.yml"
    config_file.write_text(
        yaml.safe_dump(
            {
                "state_dir": str(tmp_path / "state"),
                "cache_dir": str(tmp_path / "cache"),
                "staging_dir": str(tmp_path / "staging"),
                "lock_timeout": 2,
                "repositories": [{"id": "central", "url": str(sample_repo.root)}],
            }
        )
    )
    return {"FPCTL_CONFIG_FILE": str(config_file), "COLUMNS": "250"}


@pytest.fixture()
def channel_path(sample_channel: Any) -> str:
    return str(sample_channel.manifest.url)


def _install(env: dict[str, str], target: Path, channel: str, *extra: str) -> Result:
    return runner.invoke(
        app,
        ["install", "--dir", str(target), "--fpl", "org.example:server", "--channel", channel]
        + list(extra),
        env=env,
    )


@pytest.fixture()
def installed(cli_env: dict[str, str], channel_path: str, tmp_path: Path) -> Path:
    target = tmp_path / "server"
    result = _install(cli_env, target, channel_path)
    assert result.exit_code == 0, result.stdout
    return target


def test_version_option_outputs_package_version(cli_env: dict[str, str]) -> None:
    result = runner.invoke(app, ["--version"], env=cli_env)

    assert result.exit_code == 0
    assert f"fpctl {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(cli_env: dict[str, str]) -> None:
    result = runner.invoke(app, env=cli_env)

    assert result.exit_code == 0
    assert "Feature-pack installation manager" in result.stdout


def test_config_show_renders_table(cli_env: dict[str, str], tmp_path: Path) -> None:
    result = runner.invoke(app, ["config", "show"], env=cli_env)

    assert result.exit_code == 0
    assert "staging_dir" in result.stdout
    assert "lock_timeout" in result.stdout
    assert "central" in result.stdout


def test_config_show_json(cli_env: dict[str, str], tmp_path: Path) -> None:
    result = runner.invoke(app, ["config", "show", "--json"], env=cli_env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["lock_timeout"] == 2.0
    assert payload["staging"] == {"max_age_hours": 24.0, "sweep_on_start": True}


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yml"
    config_file.write_text("surprise: true\n")

    result = runner.invoke(app, ["config", "show"], env={"FPCTL_CONFIG_FILE": str(config_file)})

    assert result.exit_code == 2
    assert "Unknown configuration keys" in result.stdout


def test_install_provisions_and_logs(installed: Path, tmp_path: Path) -> None:
    assert (installed / "modules" / "core-1.0.2.jar").is_file()
    metadata = InstallationMetadataStore().load(installed)
    assert [channel.name for channel in metadata.channels] == ["channel-0"]
    assert [repo.id for repo in metadata.channels[0].repositories] == ["central"]

    records = _operations(tmp_path / "state")
    assert records[-1]["command"] == "install"
    assert records[-1]["result"]["status"] == "success"


def test_install_reports_summary(
    cli_env: dict[str, str], channel_path: str, tmp_path: Path
) -> None:
    target = tmp_path / "server"

    result = _install(cli_env, target, channel_path, "--package", "docs")

    assert result.exit_code == 0, result.stdout
    assert f"Installed org.example:server into {target} (2 artifacts)." in result.stdout
    assert (target / "docs" / "guide.txt").is_file()


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["--channel", "main.yaml"], "Provide exactly one of --fpl or --definition."),
        (["--fpl", "org.example:server"], "At least one --channel is required."),
        (["--fpl", "org.example:server", "--channel", "nonsense"], "must be a manifest URL"),
        (["--fpl", "server", "--channel", "main.yaml"], "must be <groupId>:<artifactId>"),
    ],
)
def test_install_validation_errors(
    cli_env: dict[str, str], tmp_path: Path, args: list[str], message: str
) -> None:
    result = runner.invoke(app, ["install", "--dir", str(tmp_path / "server"), *args], env=cli_env)

    assert result.exit_code == 2
    assert message in result.stdout
    assert not (tmp_path / "server").exists()


def test_install_unknown_feature_pack_reports_hints(
    cli_env: dict[str, str], channel_path: str, tmp_path: Path
) -> None:
    result = runner.invoke(
        app,
        [
            "install",
            "--dir",
            str(tmp_path / "server"),
            "--fpl",
            "org.example:absent",
            "--channel",
            channel_path,
        ],
        env=cli_env,
    )

    assert result.exit_code == 1
    assert "Unresolved artifacts: org.example:absent" in result.stdout
    assert "Attempted repositories: central" in result.stdout
    records = _operations(tmp_path / "state")
    assert records[-1]["result"]["status"] == "error"


def test_install_from_definition(
    cli_env: dict[str, str], channel_path: str, tmp_path: Path
) -> None:
    definition = tmp_path / "definition.yaml"
    definition.write_text(
        yaml.safe_dump(
            {
                "featurePacks": [{"location": "org.example:server"}],
                "configs": [{"model": "standalone", "name": "web.xml", "layers": ["web"]}],
                "channels": [
                    {
                        "name": "from-file",
                        "manifest": {"url": channel_path},
                        "repositories": [{"id": "central", "url": str(tmp_path / "repo")}],
                    }
                ],
            }
        )
    )

    result = runner.invoke(
        app,
        ["install", "--dir", str(tmp_path / "server"), "--definition", str(definition)],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert (tmp_path / "server" / "configuration" / "web.xml").is_file()
    metadata = InstallationMetadataStore().load(tmp_path / "server")
    assert metadata.channels[0].name == "from-file"


def test_update_list_and_perform(
    cli_env: dict[str, str], installed: Path, sample_repo: Any
) -> None:
    result = runner.invoke(app, ["update", "list", "--dir", str(installed)], env=cli_env)
    assert result.exit_code == 0
    assert "No updates available." in result.stdout

    sample_repo.publish("org.example", "core", "1.0.3")

    listed = runner.invoke(app, ["update", "list", "--dir", str(installed)], env=cli_env)
    assert listed.exit_code == 0
    assert "org.example:core" in listed.stdout
    assert "1.0.3" in listed.stdout

    as_json = runner.invoke(
        app, ["update", "list", "--dir", str(installed), "--json"], env=cli_env
    )
    assert as_json.exit_code == 0
    payload = _extract_json(as_json.stdout)
    assert payload["updated"] == [{"artifact": "org.example:core", "from": "1.0.2", "to": "1.0.3"}]

    dry = runner.invoke(
        app, ["update", "perform", "--dir", str(installed), "--dry-run"], env=cli_env
    )
    assert dry.exit_code == 0
    assert "Dry run" in dry.stdout
    assert not (installed / "modules" / "core-1.0.3.jar").exists()

    performed = runner.invoke(app, ["update", "perform", "--dir", str(installed)], env=cli_env)
    assert performed.exit_code == 0, performed.stdout
    assert f"Updated {installed}." in performed.stdout
    assert (installed / "modules" / "core-1.0.3.jar").is_file()

    again = runner.invoke(app, ["update", "perform", "--dir", str(installed)], env=cli_env)
    assert again.exit_code == 0
    assert "No updates available." in again.stdout


def test_update_perform_reports_kept_local_changes(
    cli_env: dict[str, str], installed: Path, sample_repo: Any, tmp_path: Path
) -> None:
    (installed / "README.txt").write_text("mine\n")
    sample_repo.publish_feature_pack(
        "org.example:server",
        "1.0.1",
        descriptor={"layers": {"standalone": ["base", "web"]}},
        content={"README.txt": "server 1.0.1\n"},
    )
    metadata = InstallationMetadataStore().load(installed)
    manifest_path = Path(str(metadata.channels[0].manifest.url))
    document = yaml.safe_load(manifest_path.read_text())
    for stream in document["streams"]:
        if stream["artifactId"] == "server":
            stream["version"] = "1.0.1"
    manifest_path.write_text(yaml.safe_dump(document))

    result = runner.invoke(app, ["update", "perform", "--dir", str(installed)], env=cli_env)

    assert result.exit_code == 0, result.stdout
    assert "Kept local changes in README.txt" in result.stdout
    assert (installed / "README.txt").read_text() == "mine\n"
    assert (installed / "README.txt.fpnew").read_text() == "server 1.0.1\n"
    record = _operations(tmp_path / "state")[-1]
    assert record["result"]["status"] == "warning"
    assert record["result"]["warnings"] == ["Kept local changes in README.txt"]


def test_feature_add(cli_env: dict[str, str], installed: Path) -> None:
    result = runner.invoke(
        app,
        [
            "feature",
            "add",
            "--dir",
            str(installed),
            "--fpl",
            "org.example:extras",
            "--layers",
            "metrics",
        ],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert f"Feature pack org.example:extras added to {installed}." in result.stdout
    assert "+ feature pack org.example:extras" in result.stdout
    assert (installed / "configuration" / "standalone.xml").is_file()


def test_feature_add_unknown_layer(cli_env: dict[str, str], installed: Path) -> None:
    result = runner.invoke(
        app,
        [
            "feature",
            "add",
            "--dir",
            str(installed),
            "--fpl",
            "org.example:extras",
            "--layers",
            "bogus",
        ],
        env=cli_env,
    )

    assert result.exit_code == 1
    assert "Layer 'bogus' is not supported" in result.stdout
    assert "Supported layers: metrics" in result.stdout


def test_feature_add_dry_run(cli_env: dict[str, str], installed: Path) -> None:
    result = runner.invoke(
        app,
        ["feature", "add", "--dir", str(installed), "--fpl", "org.example:extras", "--dry-run"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert "Dry run" in result.stdout
    assert not (installed / "docs" / "extras.txt").exists()


def test_feature_add_rejects_bad_coordinate(cli_env: dict[str, str], installed: Path) -> None:
    result = runner.invoke(
        app,
        ["feature", "add", "--dir", str(installed), "--fpl", "extras"],
        env=cli_env,
    )

    assert result.exit_code == 2


def test_commands_require_an_installation(cli_env: dict[str, str], tmp_path: Path) -> None:
    for command in (["update", "list"], ["update", "perform"], ["channel", "list"]):
        result = runner.invoke(app, [*command, "--dir", str(tmp_path / "nowhere")], env=cli_env)

        assert result.exit_code == 1, command
        assert "No installation found" in result.stdout


def test_directory_defaults_to_cwd(
    cli_env: dict[str, str], installed: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(installed)

    result = runner.invoke(app, ["update", "list"], env=cli_env)

    assert result.exit_code == 0
    assert "No updates available." in result.stdout


def test_channel_list(cli_env: dict[str, str], installed: Path, channel_path: str) -> None:
    result = runner.invoke(app, ["channel", "list", "--dir", str(installed)], env=cli_env)

    assert result.exit_code == 0
    assert "# channel-0" in result.stdout
    assert f"manifest: {channel_path}" in result.stdout
    assert "id: central" in result.stdout


def test_metadata_export_and_restore(
    cli_env: dict[str, str], installed: Path, tmp_path: Path
) -> None:
    bundle = tmp_path / "export" / "metadata.zip"

    exported = runner.invoke(
        app, ["metadata", "export", "--dir", str(installed), "--out", str(bundle)], env=cli_env
    )

    assert exported.exit_code == 0, exported.stdout
    assert "Exported metadata to" in exported.stdout
    assert bundle.is_file()
    assert bundle.with_name("metadata.zip.sha256").is_file()

    restored = runner.invoke(
        app,
        ["restore", "--dir", str(tmp_path / "copy"), "--bundle", str(bundle)],
        env=cli_env,
    )

    assert restored.exit_code == 0, restored.stdout
    assert "Restored installation into" in restored.stdout
    assert (tmp_path / "copy" / "modules" / "core-1.0.2.jar").is_file()


def test_restore_into_existing_directory_fails(
    cli_env: dict[str, str], installed: Path, tmp_path: Path
) -> None:
    bundle = tmp_path / "metadata.zip"
    runner.invoke(
        app, ["metadata", "export", "--dir", str(installed), "--out", str(bundle)], env=cli_env
    )

    result = runner.invoke(
        app, ["restore", "--dir", str(installed), "--bundle", str(bundle)], env=cli_env
    )

    assert result.exit_code == 1
    assert "already exists" in result.stdout


def test_staging_clean(cli_env: dict[str, str], tmp_path: Path) -> None:
    result = runner.invoke(app, ["staging", "clean"], env=cli_env)
    assert result.exit_code == 0
    assert "No orphaned staging directories found." in result.stdout

    stale = tmp_path / "staging" / "fpctl-candidate-stale"
    stale.mkdir(parents=True)
    os.utime(stale, (0, 0))

    result = runner.invoke(app, ["staging", "clean", "--max-age-hours", "1"], env=cli_env)

    assert result.exit_code == 0
    assert f"Removed {stale}" in result.stdout
    assert not stale.exists()


def test_stale_staging_is_swept_on_start(cli_env: dict[str, str], tmp_path: Path) -> None:
    stale = tmp_path / "staging" / "fpctl-candidate-stale"
    stale.mkdir(parents=True)
    os.utime(stale, (0, 0))

    result = runner.invoke(app, ["config", "show"], env=cli_env)

    assert result.exit_code == 0
    assert not stale.exists()


def test_repository_option_validation(cli_env: dict[str, str], installed: Path) -> None:
    result = runner.invoke(
        app,
        ["update", "list", "--dir", str(installed), "--repositories", "broken::"],
        env=cli_env,
    )

    assert result.exit_code == 2
    assert "<id>::<url>" in result.stdout


def test_update_result_without_change_set_is_an_internal_error() -> None:
    op = OperationScope("update list")

    with pytest.raises(typer.Exit) as excinfo:
        _require_change_set(op, OperationResult(ok=True, operation="update-list"))

    assert excinfo.value.exit_code == ExitCode.INTERNAL
    assert op.result is not None
    assert op.result["rc"] == ExitCode.INTERNAL
    assert op.result["message"] == "update-list returned no change set."
