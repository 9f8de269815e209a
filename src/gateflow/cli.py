from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

import click

from gateflow.config import GateflowConfig, default_config_path, load_config, save_config
from gateflow.enforcer import WorkflowEnforcer
from gateflow.gates import TIER_CONSTRAINTS
from gateflow.log import configure_logging
from gateflow.models import GATE_STATUSES
from gateflow.state import SessionRegistry, StateStore

DEFAULT_SESSION = "cli"

config_option = click.option(
    "--config",
    "config_value",
    default=None,
    help="Path to gateflow.toml (defaults to $XDG_CONFIG_HOME/gateflow/gateflow.toml).",
)
session_option = click.option(
    "--session",
    "session_id",
    envvar="GATEFLOW_SESSION",
    default=DEFAULT_SESSION,
    show_default=True,
)


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: GateflowConfig
    store: StateStore
    registry: SessionRegistry
    enforcer: WorkflowEnforcer


def _resolve_config_path(config_value: str | None) -> Path:
    if not config_value:
        return default_config_path()
    config_path = Path(config_value).expanduser()
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load_runtime(config_value: str | None) -> Runtime:
    config_path = _resolve_config_path(config_value)
    try:
        config = load_config(config_path)
    except (OSError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    data_root = config.paths.resolved_data_root()
    configure_logging(config.logging, data_root)
    store = StateStore(data_root, config.paths.resolved_scratch_root())
    registry = SessionRegistry(store)
    return Runtime(
        config_path=config_path,
        config=config,
        store=store,
        registry=registry,
        enforcer=WorkflowEnforcer(store, registry, config=config),
    )


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
def cli() -> None:
    """Gate-driven workflow tracker."""


@cli.command("init")
@click.option("--data-root", default=None, help="Directory holding workflow records.")
@click.option("--scratch-root", default=None, help="Directory for session bindings and markers.")
@config_option
def init_command(data_root: str | None, scratch_root: str | None, config_value: str | None) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if data_root:
        config.paths.data_root = str(Path(data_root).expanduser().resolve())
    if scratch_root:
        config.paths.scratch_root = str(Path(scratch_root).expanduser().resolve())
    save_config(config_path, config)

    store = StateStore(config.paths.resolved_data_root(), config.paths.resolved_scratch_root())
    store.active_dir.mkdir(parents=True, exist_ok=True)
    store.completed_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized gateflow in {store.data_root}")
    click.echo(f"Config: {config_path}")


@cli.command("start")
@click.argument("workflow_type")
@click.option(
    "--mode",
    type=click.Choice(sorted(TIER_CONSTRAINTS)),
    default="standard",
    show_default=True,
)
@click.option("--description", default="")
@click.option("--id", "workflow_id", default=None)
@session_option
@config_option
def start_command(
    workflow_type: str,
    mode: str,
    description: str,
    workflow_id: str | None,
    session_id: str,
    config_value: str | None,
) -> None:
    runtime = _load_runtime(config_value)
    entry = runtime.store.create_workflow(
        workflow_type, mode=mode, workflow_id=workflow_id, description=description
    )
    if entry is None:
        raise click.ClickException("Could not create workflow record.")
    runtime.enforcer.bind_session(session_id, entry.path)
    click.echo(f"Started {workflow_type} workflow {entry.state.workflow_id}")
    click.echo(f"Record: {entry.path}")
    click.echo(f"Current phase: {entry.state.phase.current}")


@cli.command("status")
@session_option
@config_option
def status_command(session_id: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value)
    payload = runtime.enforcer.get_state(session_id)
    orphans = runtime.store.find_orphaned_companions()
    if orphans:
        payload["orphaned_notes"] = [str(path) for path in orphans]
    _echo_json(payload)


@cli.command("gate")
@click.argument("gate_name")
@click.argument("status", type=click.Choice(sorted(GATE_STATUSES)))
@click.option("--agent", "agent_type", default=None)
@click.option("--new-content", is_flag=True, default=False, help="Restart the iteration count.")
@session_option
@config_option
def gate_command(
    gate_name: str,
    status: str,
    agent_type: str | None,
    new_content: bool,
    session_id: str,
    config_value: str | None,
) -> None:
    runtime = _load_runtime(config_value)
    result = runtime.enforcer.update_gate(
        session_id, gate_name, status, agent_type, new_content=new_content
    )
    if not result.updated:
        raise click.ClickException(result.message)
    click.echo(result.message)
    if result.state is not None:
        click.echo(f"Current phase: {result.state.phase.current}")


@cli.command("bind")
@click.argument("workflow_path")
@session_option
@config_option
def bind_command(workflow_path: str, session_id: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value)
    if runtime.store.read_state(workflow_path) is None:
        raise click.ClickException(f"Not a readable workflow record: {workflow_path}")
    if not runtime.enforcer.bind_session(session_id, workflow_path):
        raise click.ClickException("Failed to bind session.")
    click.echo(f"Session {session_id} bound to {workflow_path}")


@cli.command("check")
@session_option
@config_option
@click.pass_context
def check_command(ctx: click.Context, session_id: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value)
    result = runtime.enforcer.check_completion(session_id)
    _echo_json(result.to_dict())
    if not result.can_complete:
        ctx.exit(2)


@cli.command("archive")
@session_option
@config_option
def archive_command(session_id: str, config_value: str | None) -> None:
    runtime = _load_runtime(config_value)
    active = runtime.registry.get_workflow_for_session(session_id)
    if active is None:
        raise click.ClickException("No active workflow found.")
    target = runtime.store.archive_workflow(active.path)
    if target is None:
        raise click.ClickException(
            f"Workflow {active.state.workflow_id} still has open gates; not archived."
        )
    runtime.registry.clear_session_binding(session_id)
    runtime.registry.clear_guard(session_id)
    click.echo(f"Archived {active.state.workflow_id} to {target}")
