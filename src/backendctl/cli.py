"""Typer-powered command line interface for ``backendctl``.

Every command goes through :class:`~backendctl.api.ServiceVersionsApi`, so the
CLI sees the same ``{"message", "code"}`` errors as any other consumer.
Long-running commands follow the ``progress`` stream until the operation
finishes; pressing Ctrl+C requests cancellation of a running download.
"""
from __future__ import annotations

import textwrap
from collections.abc import Mapping, Sequence
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.status import Status
from rich.table import Table

from . import __version__
from .api import ServiceVersionsApi
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode, exit_code_for
from .logging import OperationScope, StructuredLogger
from .models import DataLossAck
from .operations import OperationStatus
from .orchestrator import ServiceVersionsOrchestrator

console = Console()

WAIT_INTERVAL = 0.2
SHORT_ID_LENGTH = 12

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to backendctl's YAML config file.",
)

ACK_OPTION = typer.Option(
    ...,
    "--ack",
    help=(
        "Confirm the data-loss warning: 'has_backup' or 'proceed_without_backup'."
    ),
)

OP_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the final operation snapshot as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Keep the containerised backend service running and switch its versions.

        Switches stop the active instance, keep it as a rollback target, start
        the selected version, and restore the previous instance if anything
        fails along the way.
        """
    ).strip(),
)

retained_app = typer.Typer(help="Manage retained (rollback) instances.")
policy_app = typer.Typer(help="Inspect and change retention and port settings.")
images_app = typer.Typer(help="Manage locally installed images.")
volumes_app = typer.Typer(help="Manage container runtime volumes.")

app.add_typer(retained_app, name="retained")
app.add_typer(policy_app, name="policy")
app.add_typer(images_app, name="images")
app.add_typer(volumes_app, name="volumes")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    api: ServiceVersionsApi


def _build_orchestrator(config: AppConfig, logger: StructuredLogger) -> ServiceVersionsOrchestrator:
    return ServiceVersionsOrchestrator.from_config(config, logger=logger)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    logger = StructuredLogger(config.logs_dir)
    orchestrator = _build_orchestrator(config, logger)
    ctx.call_on_close(orchestrator.close)
    runtime = RuntimeContext(config=config, logger=logger, api=ServiceVersionsApi(orchestrator))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the backendctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"backendctl {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _unwrap(op: OperationScope, response: Mapping[str, Any]) -> Any:
    """Return the payload of a successful API response or exit with its error."""
    if response.get("ok"):
        return response.get("data")
    error = response.get("error") or {}
    code = error.get("code")
    message = str(error.get("message") or "Unexpected error")
    _command_error(
        op,
        message,
        rc=exit_code_for(code),
        errors=[f"{code}: {message}" if code else message],
    )


def _format_bytes(value: object) -> str:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        return "-"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{value} B"


def _describe_progress(payload: Mapping[str, Any]) -> str:
    message = str(payload.get("message") or "Working")
    parts: list[str] = []
    download = payload.get("download_progress")
    extract = payload.get("extract_progress")
    if isinstance(download, int) and payload.get("type") in {"install", "update"}:
        parts.append(f"download {download}%")
    if isinstance(extract, int) and payload.get("type") in {"install", "update"}:
        parts.append(f"extract {extract}%")
    return f"{message} [{' | '.join(parts)}]" if parts else message


def _follow_operation(
    runtime: RuntimeContext,
    op: OperationScope,
    op_id: str,
    *,
    label: str,
    json_output: bool,
) -> dict[str, Any]:
    """Render progress for *op_id* until it finishes; return the final snapshot."""
    orchestrator = runtime.api.orchestrator
    status_cm = nullcontext() if json_output else console.status(label)
    with status_cm as status:

        def _on_progress(payload: dict[str, object]) -> None:
            if payload.get("op_id") == op_id and isinstance(status, Status):
                status.update(_describe_progress(payload))

        unsubscribe = runtime.api.subscribe("progress", _on_progress)
        try:
            while True:
                try:
                    orchestrator.wait_for_operation(timeout=WAIT_INTERVAL)
                    break
                except TimeoutError:
                    continue
                except KeyboardInterrupt:
                    _request_cancel(runtime, op, op_id)
        finally:
            unsubscribe()

    snapshot = orchestrator.current_operation()
    if snapshot is None or snapshot.op_id != op_id:
        _command_error(op, "Operation state was lost.", rc=ExitCode.PROVIDER)
    return snapshot.to_dict()


def _request_cancel(runtime: RuntimeContext, op: OperationScope, op_id: str) -> None:
    response = runtime.api.cancel_operation({"op_id": op_id})
    data = response.get("data") if response.get("ok") else None
    if isinstance(data, Mapping) and data.get("canceled"):
        console.print(f"[yellow]{data.get('message')}[/yellow]")
        op.add_step("cancel.requested", detail=op_id)
    else:
        console.print("[yellow]This operation cannot be canceled right now.[/yellow]")
        op.add_step("cancel.refused", status="warning", detail=op_id)


def _run_operation(
    ctx: typer.Context,
    command: str,
    *,
    args: Mapping[str, object],
    target: Mapping[str, object],
    label: str,
    json_output: bool,
    launch: Any,
) -> None:
    """Launch an operation through *launch* and follow it to completion."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(command, args=dict(args), target=dict(target)) as op:
        data = _unwrap(op, launch(runtime.api))
        op_id = str(data["op_id"])
        op.add_step("operation.started", detail=op_id)
        snapshot = _follow_operation(runtime, op, op_id, label=label, json_output=json_output)
        status = snapshot.get("status")

        if json_output:
            console.print_json(data={"operation": snapshot})

        if status == OperationStatus.COMPLETED.value:
            if not json_output:
                console.print(f"[green]{label}: {snapshot.get('message') or 'Completed'}.[/green]")
            op.success(f"{label} completed.", changed=1, context={"op_id": op_id})
            return

        if status == OperationStatus.CANCELED.value:
            if not json_output:
                console.print(f"[yellow]{label} canceled.[/yellow]")
            op.warning(f"{label} canceled.", context={"op_id": op_id})
            raise typer.Exit(code=ExitCode.PROVIDER)

        message = str(snapshot.get("error") or f"{label} failed.")
        _command_error(
            op,
            message,
            rc=exit_code_for(snapshot.get("error_code")),
            errors=[f"{snapshot.get('error_code')}: {message}"],
        )


def _render_state(data: Mapping[str, Any]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Version", style="bold")
    table.add_column("Category")
    table.add_column("Availability")
    table.add_column("Installability")
    table.add_column("Active")
    table.add_column("Size")
    table.add_column("Notes")

    versions = data.get("versions") or []
    if not versions:
        table.add_row("(none)", "", "", "", "", "", "")
    for row in versions:
        active = ""
        if row.get("is_active"):
            active = f"yes ({row.get('active_state') or 'unknown'})"
        notes = [str(badge) for badge in row.get("channel_badges") or []]
        if row.get("match_hint"):
            notes.append(str(row["match_hint"]))
        if row.get("digest_hint"):
            notes.append(str(row["digest_hint"]))
        table.add_row(
            str(row.get("display_version") or row.get("id")),
            str(row.get("category") or ""),
            str(row.get("availability") or ""),
            str(row.get("installability") or "-"),
            active,
            _format_bytes(row.get("size_bytes")),
            ", ".join(notes),
        )
    console.print(table)

    retained = data.get("retained_instances") or []
    if retained:
        retained_table = Table(show_header=True, header_style="bold magenta")
        retained_table.add_column("Container", style="bold")
        retained_table.add_column("Version")
        retained_table.add_column("Retained at")
        retained_table.add_column("State")
        for item in retained:
            retained_table.add_row(
                str(item.get("container_id") or "")[:SHORT_ID_LENGTH],
                str(item.get("version_tag") or ""),
                str(item.get("retained_at") or ""),
                str(item.get("state") or ""),
            )
        console.print(retained_table)

    policy = data.get("retention_policy") or {}
    ports = data.get("port_preferences") or {}
    storage = data.get("storage") or {}
    console.print(f"UI: {data.get('ui_url') or 'not reachable'}")
    console.print(
        f"Retention: keep {policy.get('keep_count', '-')}  "
        f"Ports: ui={ports.get('ui', '-')} ssh={ports.get('ssh', '-')}"
    )
    console.print(
        f"Storage: free {_format_bytes(storage.get('free_bytes'))}, "
        f"images {_format_bytes(storage.get('used_bytes'))}, "
        f"after update {_format_bytes(storage.get('estimate_after_update_bytes'))}"
    )
    if data.get("offline"):
        synced = data.get("last_synced_at") or "never"
        console.print(f"[yellow]Offline: release list last synced {synced}.[/yellow]")


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------
@app.command()
def state(
    ctx: typer.Context,
    refresh: bool = typer.Option(
        False,
        "--refresh",
        help="Rebuild the state instead of reusing the cached snapshot.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Bypass the release and installability caches (implies --refresh).",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the state snapshot as JSON instead of tables.",
    ),
) -> None:
    """Show versions, retained instances, and settings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state",
        args={"refresh": refresh, "force": force, "json": json_output},
        target={"kind": "service", "image_repo": runtime.config.image_repo},
    ) as op:
        if refresh or force:
            response = runtime.api.refresh({"force_refresh": force})
        else:
            response = runtime.api.get_state()
        data = _unwrap(op, response)

        if json_output:
            console.print_json(data=data)
            op.success("Reported state as JSON.", changed=0)
            return

        _render_state(data)
        op.success("Reported state.", changed=0)


@app.command()
def inventory(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the inventory as JSON instead of tables.",
    ),
) -> None:
    """List local images, managed containers, and volumes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "inventory",
        args={"json": json_output},
        target={"kind": "runtime", "image_repo": runtime.config.image_repo},
    ) as op:
        data = _unwrap(op, runtime.api.get_inventory())

        if json_output:
            console.print_json(data=data)
            op.success("Reported inventory as JSON.", changed=0)
            return

        images = Table(show_header=True, header_style="bold magenta", title="Images")
        images.add_column("Image", style="bold")
        images.add_column("ID")
        images.add_column("Size")
        for image in data.get("images") or []:
            images.add_row(
                str(image.get("image_ref") or ""),
                str(image.get("image_id") or "").removeprefix("sha256:")[:SHORT_ID_LENGTH],
                _format_bytes(image.get("size_bytes")),
            )
        if not data.get("images"):
            images.add_row("(none)", "", "")
        console.print(images)

        containers = Table(show_header=True, header_style="bold magenta", title="Containers")
        containers.add_column("Name", style="bold")
        containers.add_column("ID")
        containers.add_column("Image")
        containers.add_column("State")
        for container in data.get("containers") or []:
            containers.add_row(
                str(container.get("name") or ""),
                str(container.get("container_id") or "")[:SHORT_ID_LENGTH],
                str(container.get("image_ref") or ""),
                str(container.get("state") or ""),
            )
        if not data.get("containers"):
            containers.add_row("(none)", "", "", "")
        console.print(containers)

        volumes = Table(show_header=True, header_style="bold magenta", title="Volumes")
        volumes.add_column("Name", style="bold")
        volumes.add_column("Driver")
        for volume in data.get("volumes") or []:
            volumes.add_row(str(volume.get("name") or ""), str(volume.get("driver") or ""))
        if not data.get("volumes"):
            volumes.add_row("(none)", "")
        console.print(volumes)
        op.success("Reported inventory.", changed=0)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Image tag to download (testing, vX.Y.Z, local, ...)."),
    json_output: bool = OP_JSON_OPTION,
) -> None:
    """Download a version so it can be activated later."""
    _run_operation(
        ctx,
        "install",
        args={"tag": tag},
        target={"kind": "version", "tag": tag},
        label=f"Install {tag}",
        json_output=json_output,
        launch=lambda api: api.install({"tag": tag}),
    )


@app.command()
def start(ctx: typer.Context, json_output: bool = OP_JSON_OPTION) -> None:
    """Start the active instance and wait for its UI."""
    _run_operation(
        ctx,
        "start",
        args={},
        target={"kind": "instance", "role": "active"},
        label="Start",
        json_output=json_output,
        launch=lambda api: api.start_active(),
    )


@app.command()
def stop(ctx: typer.Context, json_output: bool = OP_JSON_OPTION) -> None:
    """Stop the active instance."""
    _run_operation(
        ctx,
        "stop",
        args={},
        target={"kind": "instance", "role": "active"},
        label="Stop",
        json_output=json_output,
        launch=lambda api: api.stop_active(),
    )


@app.command()
def update(
    ctx: typer.Context,
    ack: DataLossAck = ACK_OPTION,
    json_output: bool = OP_JSON_OPTION,
) -> None:
    """Switch to the newest official release."""
    _run_operation(
        ctx,
        "update",
        args={"ack": ack.value},
        target={"kind": "version", "tag": "latest-release"},
        label="Update",
        json_output=json_output,
        launch=lambda api: api.update_to_latest({"ack": ack.value}),
    )


@app.command()
def activate(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Installed image tag to switch to."),
    ack: DataLossAck = ACK_OPTION,
    json_output: bool = OP_JSON_OPTION,
) -> None:
    """Switch the active instance to an installed version."""
    _run_operation(
        ctx,
        "activate",
        args={"tag": tag, "ack": ack.value},
        target={"kind": "version", "tag": tag},
        label=f"Switch to {tag}",
        json_output=json_output,
        launch=lambda api: api.activate_version({"tag": tag, "ack": ack.value}),
    )


@app.command()
def rollback(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Retained instance id (or unique prefix)."),
    ack: DataLossAck = ACK_OPTION,
    json_output: bool = OP_JSON_OPTION,
) -> None:
    """Make a retained instance active again."""
    _run_operation(
        ctx,
        "rollback",
        args={"container_id": container_id, "ack": ack.value},
        target={"kind": "instance", "container_id": container_id},
        label="Rollback",
        json_output=json_output,
        launch=lambda api: api.activate_retained_instance(
            {"container_id": container_id, "ack": ack.value}
        ),
    )


@retained_app.command("delete")
def retained_delete(
    ctx: typer.Context,
    container_id: str = typer.Argument(..., help="Retained instance id (or unique prefix)."),
    json_output: bool = OP_JSON_OPTION,
) -> None:
    """Delete a retained instance."""
    _run_operation(
        ctx,
        "retained delete",
        args={"container_id": container_id},
        target={"kind": "instance", "container_id": container_id},
        label="Delete retained instance",
        json_output=json_output,
        launch=lambda api: api.delete_retained_instance({"container_id": container_id}),
    )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@policy_app.command("show")
def policy_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the settings as JSON instead of a table.",
    ),
) -> None:
    """Show the retention policy and port preferences."""
    runtime = _get_runtime(ctx)
    orchestrator = runtime.api.orchestrator
    with runtime.logger.operation(
        "policy show",
        args={"json": json_output},
        target={"kind": "settings"},
    ) as op:
        data = {
            "retention_policy": orchestrator.get_retention_policy().to_dict(),
            "port_preferences": orchestrator.get_port_preferences().to_dict(),
        }
        if json_output:
            console.print_json(data=data)
            op.success("Reported settings as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Setting", style="bold")
        table.add_column("Value")
        table.add_row("retention.keep_count", str(data["retention_policy"]["keep_count"]))
        table.add_row("ports.ui", str(data["port_preferences"]["ui"]))
        table.add_row("ports.ssh", str(data["port_preferences"]["ssh"]))
        console.print(table)
        op.success("Reported settings.", changed=0)


@policy_app.command("set-retention")
def policy_set_retention(
    ctx: typer.Context,
    keep_count: str = typer.Argument(..., help="Retained instances to keep (0-20, minimum 1 kept)."),
) -> None:
    """Change how many retained instances survive a switch."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "policy set-retention",
        args={"keep_count": keep_count},
        target={"kind": "settings", "key": "retention_policy"},
    ) as op:
        data = _unwrap(op, runtime.api.set_retention_policy({"keep_count": keep_count}))
        console.print(f"[green]Retention set to keep {data['keep_count']}.[/green]")
        op.success("Updated retention policy.", changed=1, context=data)


@policy_app.command("set-ports")
def policy_set_ports(
    ctx: typer.Context,
    ui: str = typer.Option(..., "--ui", help="Host port for the web UI."),
    ssh: str = typer.Option(..., "--ssh", help="Host port for SSH."),
) -> None:
    """Change the host ports used by the next created instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "policy set-ports",
        args={"ui": ui, "ssh": ssh},
        target={"kind": "settings", "key": "port_preferences"},
    ) as op:
        data = _unwrap(op, runtime.api.set_port_preferences({"ui": ui, "ssh": ssh}))
        console.print(f"[green]Ports set to ui={data['ui']} ssh={data['ssh']}.[/green]")
        op.success("Updated port preferences.", changed=1, context=data)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
@images_app.command("remove")
def images_remove(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Tag of the installed image to remove."),
) -> None:
    """Remove an installed image that no instance uses."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "images remove",
        args={"tag": tag},
        target={"kind": "image", "tag": tag},
    ) as op:
        data = _unwrap(op, runtime.api.remove_image({"tag": tag}))
        console.print(f"[green]Removed image '{data['removed']}'.[/green]")
        op.success("Removed image.", changed=1, context=data)


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------
@volumes_app.command("remove")
def volumes_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Volume name."),
) -> None:
    """Remove a named volume."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "volumes remove",
        args={"name": name},
        target={"kind": "volume", "name": name},
    ) as op:
        _unwrap(op, runtime.api.remove_volume({"name": name}))
        console.print(f"[green]Removed volume '{name}'.[/green]")
        op.success("Removed volume.", changed=1)


@volumes_app.command("prune")
def volumes_prune(ctx: typer.Context) -> None:
    """Remove volumes not used by any container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "volumes prune",
        args={},
        target={"kind": "volume", "scope": "unused"},
    ) as op:
        data = _unwrap(op, runtime.api.prune_volumes())
        deleted = list(data.get("VolumesDeleted") or [])
        reclaimed = data.get("SpaceReclaimed")
        console.print(
            f"[green]Pruned {len(deleted)} volume(s); reclaimed {_format_bytes(reclaimed)}.[/green]"
        )
        op.success("Pruned volumes.", changed=len(deleted), context={"deleted": deleted})


__all__ = ["app"]
