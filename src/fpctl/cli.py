"""Typer-powered command line interface for ``fpctl``.

Every command runs inside a structured-log operation scope, takes the
per-installation lock before touching an installation and maps the
:class:`~fpctl.operations.OperationResult` it receives onto an exit code.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .differ import ChangeSet
from .errors import FailureKind, MetadataError, OperationFailure
from .exit_codes import ExitCode
from .features import FeatureAddRequest
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .metadata import METADATA_DIR, InstallationMetadataStore
from .model import ArtifactReference, Channel, ManifestCoordinate, Repository
from .operations import InstallationManager, OperationResult, ProvisioningDefinition

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to fpctl's YAML config file.",
)

INSTALL_DIR_OPTION = typer.Option(
    None,
    "--dir",
    file_okay=False,
    help="Installation directory (defaults to the current directory).",
)

REPOSITORIES_OPTION = typer.Option(
    None,
    "--repositories",
    help=(
        "Comma-separated repositories (<id>::<url> or <url>) replacing the channel "
        "repositories for this invocation only."
    ),
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Resolve and report changes without modifying the installation.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Feature-pack installation manager.

        Provision installations from feature packs, add feature packs to an
        existing installation, and update it to the latest versions allowed
        by its channels. Changes are staged in a candidate directory and
        swapped into place atomically.
        """
    ).strip(),
)

feature_app = typer.Typer(help="Manage the feature packs of an installation.")
update_app = typer.Typer(help="List and apply updates to an installation.")
channel_app = typer.Typer(help="Inspect the channels of an installation.")
metadata_app = typer.Typer(help="Export installation metadata bundles.")
staging_app = typer.Typer(help="Maintain candidate staging directories.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(feature_app, name="feature")
app.add_typer(update_app, name="update")
app.add_typer(channel_app, name="channel")
app.add_typer(metadata_app, name="metadata")
app.add_typer(staging_app, name="staging")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    manager: InstallationManager
    store: InstallationMetadataStore


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(str(exc), style="red", markup=False)
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    store = InstallationMetadataStore()
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        manager=InstallationManager(config, store=store),
        store=store,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the fpctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"fpctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)

    if runtime.config.staging.sweep_on_start and ctx.invoked_subcommand != "staging":
        runtime.manager.clean_staging()


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(message, style="red", markup=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _report_failure(op: OperationScope, result: OperationResult) -> NoReturn:
    """Render a failed operation with the hints its details carry."""
    failure = result.failure
    if failure is None:  # pragma: no cover - ok results never reach here
        _command_error(op, f"{result.operation} failed.", rc=ExitCode.INTERNAL)
    hints = _failure_hints(failure)
    console.print(failure.message, style="red", markup=False)
    for hint in hints:
        console.print(f"  {hint}", markup=False)
    op.error(
        failure.message,
        errors=[f"{failure.kind.value}: {failure.message}", *hints],
        rc=int(ExitCode.OPERATION),
        context=failure.to_dict(),
    )
    raise typer.Exit(code=int(ExitCode.OPERATION))


def _failure_hints(failure: OperationFailure) -> list[str]:
    details = failure.details
    hints: list[str] = []
    for key, label in (
        ("supported_layers", "Supported layers"),
        ("supported_models", "Supported models"),
        ("unresolved", "Unresolved artifacts"),
        ("attempted_repositories", "Attempted repositories"),
        ("missing", "Missing files"),
    ):
        values = details.get(key)
        if isinstance(values, (list, tuple)) and values:
            hints.append(f"{label}: {', '.join(str(value) for value in values)}")
    return hints


def _render_change_set(change_set: ChangeSet, *, title: str) -> None:
    if change_set.is_empty:
        console.print("No changes.")
        return
    changes = change_set.artifact_changes
    if changes:
        table = Table(title=title, show_header=True, header_style="bold magenta")
        table.add_column("Artifact", style="cyan")
        table.add_column("From")
        table.add_column("To")
        for change in changes:
            table.add_row(change.key, change.old_version or "-", change.new_version or "-")
        console.print(table)
    for producer in change_set.added_feature_packs:
        console.print(f"[green]+ feature pack[/green] {producer}")
    for producer in change_set.removed_feature_packs:
        console.print(f"[red]- feature pack[/red] {producer}")


def _parse_repositories(value: str | None) -> list[Repository] | None:
    if not value:
        return None
    repositories: list[Repository] = []
    for index, item in enumerate(part for part in value.split(",") if part.strip()):
        try:
            repositories.append(Repository.parse(item, index=index))
        except ValueError as exc:
            console.print(str(exc), style="red", markup=False)
            raise typer.Exit(code=ExitCode.VALIDATION) from exc
    return repositories or None


def _parse_channel_option(
    value: str,
    index: int,
    repositories: Sequence[Repository],
) -> Channel:
    """Build a channel from a manifest URL/path or ``groupId:artifactId[:version]``."""
    text = value.strip()
    if "://" in text or "/" in text or text.endswith((".yaml", ".yml")):
        coordinate = ManifestCoordinate(url=text)
    else:
        parts = text.split(":")
        if len(parts) not in (2, 3) or not all(part.strip() for part in parts):
            raise ValueError(
                f"Channel '{value}' must be a manifest URL or <groupId>:<artifactId>[:<version>]."
            )
        coordinate = ManifestCoordinate(
            maven=ArtifactReference(
                parts[0].strip(),
                parts[1].strip(),
                extension="yaml",
                classifier="manifest",
                version=parts[2].strip() if len(parts) == 3 else None,
            )
        )
    return Channel(manifest=coordinate, repositories=tuple(repositories), name=f"channel-{index}")


def _resolve_install_dir(directory: Path | None) -> Path:
    return (directory or Path.cwd()).expanduser().absolute()


def _require_installation(runtime: RuntimeContext, install_dir: Path, op: OperationScope) -> None:
    if not runtime.store.exists(install_dir):
        _command_error(
            op,
            f"No installation found at {install_dir} (missing {METADATA_DIR}).",
            rc=ExitCode.OPERATION,
        )


def _require_change_set(op: OperationScope, result: OperationResult) -> ChangeSet:
    if result.change_set is None:
        _command_error(op, f"{result.operation} returned no change set.", rc=ExitCode.INTERNAL)
    return result.change_set


def _finish(op: OperationScope, result: OperationResult, message: str) -> None:
    if not result.ok:
        _report_failure(op, result)
    changed = len(result.change_set.artifact_changes) if result.change_set is not None else 0
    conflicts = [str(item) for item in result.details.get("conflicts", []) or []]
    if conflicts:
        op.warning(
            message,
            warnings=[f"Kept local changes in {path}" for path in conflicts],
            changed=changed,
            context=result.to_dict(),
        )
        return
    op.success(message, changed=changed, context=result.to_dict())


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command("install")
def install(
    ctx: typer.Context,
    directory: Path = typer.Option(
        ...,
        "--dir",
        file_okay=False,
        help="Target directory for the new installation (must not exist).",
    ),
    fpl: str | None = typer.Option(
        None,
        "--fpl",
        help="Feature pack to install as <groupId>:<artifactId>[:<version>].",
    ),
    definition: Path | None = typer.Option(
        None,
        "--definition",
        dir_okay=False,
        help="YAML provisioning definition (featurePacks, configs, channels).",
    ),
    channel: list[str] | None = typer.Option(
        None,
        "--channel",
        help="Channel manifest URL/path or Maven coordinate; repeat in priority order.",
    ),
    repositories: str | None = REPOSITORIES_OPTION,
    package: list[str] | None = typer.Option(
        None,
        "--package",
        help="Package to include from the feature pack; may be repeated.",
    ),
) -> None:
    """Provision a new installation from a feature pack or definition file."""
    runtime = _get_runtime(ctx)
    target = directory.expanduser().absolute()
    args = {
        "dir": str(target),
        "fpl": fpl,
        "definition": str(definition) if definition else None,
        "channels": list(channel or []),
        "repositories": repositories,
        "packages": list(package or []),
    }
    with runtime.logger.operation(
        "install",
        args=args,
        target={"kind": "installation", "path": str(target)},
    ) as op:
        if (fpl is None) == (definition is None):
            _command_error(op, "Provide exactly one of --fpl or --definition.")
        override = _parse_repositories(repositories)
        channel_repos = override or list(runtime.config.repositories)
        try:
            channels = [
                _parse_channel_option(value, index, channel_repos)
                for index, value in enumerate(channel or [])
            ]
            if definition is not None:
                prov_definition = ProvisioningDefinition.from_file(definition, channels)
            elif fpl is not None:
                prov_definition = ProvisioningDefinition.from_coordinate(
                    fpl, channels, packages=package or ()
                )
            else:
                _command_error(op, "Provide exactly one of --fpl or --definition.")
        except ValueError as exc:
            _command_error(op, str(exc))
        if not prov_definition.channels:
            _command_error(op, "At least one --channel is required.")

        try:
            with runtime.locks.installation_lock(target) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.manager.provision(
                    target, prov_definition, repositories=override, op=op
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.OPERATION)
        if not result.ok:
            _report_failure(op, result)
        manifest_size = len(result.manifest) if result.manifest is not None else 0
        console.print(
            f"Installed {', '.join(prov_definition.config.producers)} into {target} "
            f"({manifest_size} artifacts)."
        )
        op.success("Installation provisioned.", changed=manifest_size, context=result.to_dict())


@app.command("restore")
def restore(
    ctx: typer.Context,
    directory: Path = typer.Option(
        ...,
        "--dir",
        file_okay=False,
        help="Target directory for the restored installation (must not exist).",
    ),
    bundle: Path = typer.Option(
        ...,
        "--bundle",
        dir_okay=False,
        help="Metadata bundle produced by 'fpctl metadata export'.",
    ),
    repositories: str | None = REPOSITORIES_OPTION,
) -> None:
    """Recreate an installation from an exported metadata bundle."""
    runtime = _get_runtime(ctx)
    target = directory.expanduser().absolute()
    with runtime.logger.operation(
        "restore",
        args={"dir": str(target), "bundle": str(bundle), "repositories": repositories},
        target={"kind": "installation", "path": str(target)},
    ) as op:
        override = _parse_repositories(repositories)
        try:
            with runtime.locks.installation_lock(target) as lock:
                op.set_lock_wait_ms(lock.wait_ms)
                result = runtime.manager.restore(
                    target, bundle.expanduser(), repositories=override, op=op
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.OPERATION)
        if not result.ok:
            _report_failure(op, result)
        console.print(f"Restored installation into {target}.")
        op.success("Installation restored.", context=result.to_dict())


@feature_app.command("add")
def feature_add(
    ctx: typer.Context,
    directory: Path | None = INSTALL_DIR_OPTION,
    fpl: str = typer.Option(
        ...,
        "--fpl",
        help="Feature pack to add as <groupId>:<artifactId>[:<version>].",
    ),
    layers: str | None = typer.Option(
        None,
        "--layers",
        help="Comma-separated layers to include in the configuration model.",
    ),
    model: str | None = typer.Option(
        None,
        "--model",
        help="Layer model to configure (required when several are defined).",
    ),
    config_name: str | None = typer.Option(
        None,
        "--config-name",
        help="Configuration name (defaults to <model>.xml).",
    ),
    repositories: str | None = REPOSITORIES_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Add a feature pack to an existing installation."""
    runtime = _get_runtime(ctx)
    install_dir = _resolve_install_dir(directory)
    request = FeatureAddRequest(
        coordinate=fpl,
        layers=tuple(layer.strip() for layer in (layers or "").split(",") if layer.strip()),
        model=model,
        config_name=config_name,
    )
    args = {
        "dir": str(install_dir),
        "fpl": fpl,
        "layers": list(request.layers),
        "model": model,
        "config_name": config_name,
        "repositories": repositories,
        "dry_run": dry_run,
    }
    with runtime.logger.operation(
        "feature add",
        args=args,
        target={"kind": "installation", "path": str(install_dir)},
    ) as op:
        try:
            producer = request.feature_pack.producer
        except ValueError as exc:
            _command_error(op, str(exc))
        override = _parse_repositories(repositories)
        _require_installation(runtime, install_dir, op)
        try:
            with runtime.locks.installation_lock(install_dir) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.manager.add_feature_pack(
                    install_dir, request, repositories=override, dry_run=dry_run, op=op
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.OPERATION)
        if not result.ok:
            _report_failure(op, result)
        if result.change_set is not None:
            _render_change_set(result.change_set, title=f"Changes for {fpl}")
        if dry_run:
            _dry_run_complete(
                op, f"feature pack {fpl} would be added.", context=result.to_dict()
            )
            return
        console.print(f"Feature pack {producer} added to {install_dir}.")
        _finish(op, result, "Feature pack added.")


@update_app.command("list")
def update_list(
    ctx: typer.Context,
    directory: Path | None = INSTALL_DIR_OPTION,
    repositories: str | None = REPOSITORIES_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the artifact updates available to an installation."""
    runtime = _get_runtime(ctx)
    install_dir = _resolve_install_dir(directory)
    with runtime.logger.operation(
        "update list",
        args={"dir": str(install_dir), "repositories": repositories, "json": json_output},
        target={"kind": "installation", "path": str(install_dir)},
    ) as op:
        override = _parse_repositories(repositories)
        _require_installation(runtime, install_dir, op)
        result = runtime.manager.list_updates(install_dir, repositories=override, op=op)
        if not result.ok:
            _report_failure(op, result)
        change_set = _require_change_set(op, result)
        if json_output:
            console.print_json(data=change_set.to_dict())
        elif change_set.is_empty:
            console.print("No updates available.")
        else:
            _render_change_set(change_set, title="Available updates")
        op.success("Listed updates.", changed=0, context=change_set.to_dict())


@update_app.command("perform")
def update_perform(
    ctx: typer.Context,
    directory: Path | None = INSTALL_DIR_OPTION,
    repositories: str | None = REPOSITORIES_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Update an installation to the latest versions its channels allow."""
    runtime = _get_runtime(ctx)
    install_dir = _resolve_install_dir(directory)
    with runtime.logger.operation(
        "update perform",
        args={"dir": str(install_dir), "repositories": repositories, "dry_run": dry_run},
        target={"kind": "installation", "path": str(install_dir)},
    ) as op:
        override = _parse_repositories(repositories)
        _require_installation(runtime, install_dir, op)
        try:
            with runtime.locks.installation_lock(install_dir) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.manager.perform_update(
                    install_dir, repositories=override, dry_run=dry_run, op=op
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.OPERATION)
        if not result.ok:
            if result.failure is not None and result.failure.kind is FailureKind.NO_OP:
                console.print("No updates available.")
                op.success("No updates available.", changed=0)
                return
            _report_failure(op, result)
        change_set = _require_change_set(op, result)
        _render_change_set(change_set, title="Updates")
        if dry_run:
            _dry_run_complete(
                op,
                f"{len(change_set.artifact_changes)} artifact(s) would change.",
                context=result.to_dict(),
            )
            return
        for conflict in result.details.get("conflicts", []) or []:
            console.print(f"[yellow]Kept local changes in {conflict}[/yellow] (new: .fpnew)")
        console.print(f"Updated {install_dir}.")
        _finish(op, result, "Installation updated.")


@channel_app.command("list")
def channel_list(
    ctx: typer.Context,
    directory: Path | None = INSTALL_DIR_OPTION,
) -> None:
    """Print the channels recorded for an installation."""
    runtime = _get_runtime(ctx)
    install_dir = _resolve_install_dir(directory)
    with runtime.logger.operation(
        "channel list",
        args={"dir": str(install_dir)},
        target={"kind": "installation", "path": str(install_dir)},
    ) as op:
        _require_installation(runtime, install_dir, op)
        try:
            metadata = runtime.store.load(install_dir)
        except MetadataError as exc:
            _command_error(op, str(exc), rc=ExitCode.OPERATION)
        for channel in metadata.channels:
            console.print(f"# {channel.name or ''}", markup=False)
            console.print(f"  manifest: {channel.manifest.display()}", markup=False)
            console.print("  repositories:")
            for repository in channel.repositories:
                console.print(f"    id: {repository.id}", markup=False)
                console.print(f"    url: {repository.url}", markup=False)
        op.success(f"Listed {len(metadata.channels)} channel(s).", changed=0)


@metadata_app.command("export")
def metadata_export(
    ctx: typer.Context,
    directory: Path | None = INSTALL_DIR_OPTION,
    out: Path = typer.Option(
        ...,
        "--out",
        dir_okay=False,
        help="Path of the bundle archive to write.",
    ),
) -> None:
    """Export the installation's metadata as a restorable bundle."""
    runtime = _get_runtime(ctx)
    install_dir = _resolve_install_dir(directory)
    with runtime.logger.operation(
        "metadata export",
        args={"dir": str(install_dir), "out": str(out)},
        target={"kind": "installation", "path": str(install_dir)},
    ) as op:
        _require_installation(runtime, install_dir, op)
        try:
            with runtime.locks.installation_lock(install_dir) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.manager.export_metadata(
                    install_dir, out.expanduser(), op=op
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.OPERATION)
        if not result.ok:
            _report_failure(op, result)
        console.print(f"Exported metadata to {result.details['bundle']}.")
        op.success("Metadata exported.", changed=1, context=dict(result.details))


@staging_app.command("clean")
def staging_clean(
    ctx: typer.Context,
    max_age_hours: float | None = typer.Option(
        None,
        "--max-age-hours",
        min=0.0,
        help="Remove staging directories older than this (defaults to config).",
    ),
) -> None:
    """Remove candidate staging directories left behind by interrupted runs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "staging clean",
        args={"max_age_hours": max_age_hours},
        target={"kind": "staging"},
    ) as op:
        removed = runtime.manager.clean_staging(max_age_hours)
        for path in removed:
            console.print(f"Removed {path}")
        if not removed:
            console.print("No orphaned staging directories found.")
        op.success(
            f"Removed {len(removed)} staging director(ies).",
            changed=len(removed),
            context={"removed": [str(path) for path in removed]},
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    try:
        app()
    except Exception as exc:  # pragma: no cover - last-resort reporting
        console.print(f"[red]Unexpected error: {type(exc).__name__}: {exc}[/red]")
        raise SystemExit(int(ExitCode.INTERNAL)) from exc


__all__ = ["app", "main"]
