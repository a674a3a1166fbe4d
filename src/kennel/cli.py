from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import click

from kennel import __version__
from kennel.config import (
    DEFAULT_CONFIG_NAME,
    KennelConfig,
    apply_env_overrides,
    load_config,
    save_config,
)
from kennel.errors import KennelError
from kennel.orchestrator import Orchestrator
from kennel.tasks.manager import TaskEvent, TaskEventType
from kennel.tasks.models import TaskSnapshot

TERMINAL_EVENTS = {TaskEventType.COMPLETED, TaskEventType.FAILED, TaskEventType.CANCELLED}


@dataclass(slots=True)
class Runtime:
    base_dir: Path
    config_path: Path
    config: KennelConfig
    orchestrator: Orchestrator


def _resolve_config_path(base_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = base_dir / config_path
    return config_path.resolve()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_runtime(config_value: str) -> Runtime:
    base_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(base_dir, config_value)
    try:
        config = apply_env_overrides(load_config(config_path), os.environ)
    except (ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    ctx = click.get_current_context(silent=True)
    options = (ctx.find_root().obj if ctx is not None else None) or {}
    _configure_logging(options.get("log_level") or config.logging.level)
    try:
        orchestrator = Orchestrator.from_config(config, config_path.parent)
    except KennelError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        base_dir=base_dir,
        config_path=config_path,
        config=config,
        orchestrator=orchestrator,
    )


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _describe(event: TaskEvent) -> str:
    payload = event.payload
    if event.type is TaskEventType.PROGRESS:
        percent = payload.get("percent")
        suffix = f" ({percent}%)" if percent is not None else ""
        return f"[progress] {payload.get('message', '')}{suffix}"
    if event.type is TaskEventType.WAITING_INPUT:
        return f"[question] {payload.get('question', '')}"
    if event.type is TaskEventType.COMPLETED:
        return f"[completed] {payload.get('summary', '')}"
    if event.type is TaskEventType.FAILED:
        return f"[failed] {payload.get('error', '')}"
    return f"[{event.type.value.removeprefix('task:')}] {event.task_id}"


@click.group()
@click.version_option(__version__, prog_name="kennel")
@click.option("--log-level", default=None, help="Overrides [logging] level from the config.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Kennel: supervise coding-agent CLIs as durable tasks."""
    ctx.ensure_object(dict)["log_level"] = log_level


@cli.command("init")
@click.option("--harness", "default_harness", default=None, help="Default harness for new tasks.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def init_command(default_harness: str | None, config_value: str) -> None:
    base_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(base_dir, config_value)
    config = load_config(config_path)
    if default_harness:
        config.tasks.default_harness = default_harness
    save_config(config_path, config)

    workspace_root = config.resolve_path(config_path.parent, config.workspaces.root)
    state_dir = config.resolve_path(config_path.parent, config.state.path)
    workspace_root.mkdir(parents=True, exist_ok=True)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized kennel in {config_path.parent}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Workspaces: {workspace_root}")
    click.echo(f"State: {state_dir}")


@cli.command("harnesses")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def harnesses_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    registry = runtime.orchestrator.registry
    for name in registry.names():
        adapter = registry.get(name)
        flags = ", ".join(key for key, enabled in adapter.capabilities.to_dict().items() if enabled)
        marker = " (default)" if name == registry.default else ""
        click.echo(f"{name}{marker}: {adapter.binary} [{flags}]")


@cli.command("reconcile")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def reconcile_command(config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        report = runtime.orchestrator.start()
    except KennelError as exc:
        raise click.ClickException(str(exc)) from exc
    if not report.reconciled:
        click.echo("No interrupted tasks.")
    for task_id in report.reconciled:
        click.echo(f"{task_id}: failed (interrupted)")
    for notice in report.notices:
        click.echo(f"{notice.session_id}: {notice.message}")


@cli.command("status")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def status_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        snapshot = runtime.orchestrator.get_status(task_id)
    except KennelError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(snapshot.to_dict())


@cli.command("list")
@click.option("--session", "session_id", default=None)
@click.option("--status", "status", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def list_command(session_id: str | None, status: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    try:
        snapshots = runtime.orchestrator.list_tasks(session_id=session_id, status=status)
    except KennelError as exc:
        raise click.ClickException(str(exc)) from exc
    if not snapshots:
        click.echo("No tasks found.")
        return
    for snapshot in snapshots:
        click.echo(f"{snapshot.id}  {snapshot.status.value:<13}  {snapshot.session_id}  {snapshot.goal[:60]}")


async def _run_foreground(
    orchestrator: Orchestrator,
    goal: str,
    *,
    workspace: str,
    session_id: str,
    harness: str | None,
    timeout_ms: int | None,
) -> TaskSnapshot:
    events: asyncio.Queue[TaskEvent] = asyncio.Queue()
    orchestrator.start()
    with orchestrator.subscribe(events.put_nowait):
        task_id = orchestrator.create_task(
            goal,
            workspace=workspace,
            session_id=session_id,
            harness=harness,
            timeout_ms=timeout_ms,
        )
        click.echo(f"Task {task_id} created.")
        try:
            while True:
                event = await events.get()
                if event.task_id != task_id:
                    continue
                click.echo(_describe(event))
                if event.type is TaskEventType.WAITING_INPUT:
                    answer = await asyncio.to_thread(click.prompt, "Answer")
                    await orchestrator.respond(task_id, answer)
                if event.type in TERMINAL_EVENTS:
                    break
        except asyncio.CancelledError:
            await orchestrator.cancel(task_id)
            raise
        return await orchestrator.wait(task_id)


@cli.command("run")
@click.argument("goal")
@click.option("--workspace", required=True, help="Workspace name under the workspace root.")
@click.option("--session", "session_id", default="cli", show_default=True)
@click.option("--harness", default=None, help="Harness name; defaults to the configured one.")
@click.option("--timeout-ms", type=int, default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
def run_command(
    goal: str,
    workspace: str,
    session_id: str,
    harness: str | None,
    timeout_ms: int | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(config_value)
    try:
        snapshot = asyncio.run(
            _run_foreground(
                runtime.orchestrator,
                goal,
                workspace=workspace,
                session_id=session_id,
                harness=harness,
                timeout_ms=timeout_ms,
            )
        )
    except KennelError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Status: {snapshot.status.value}")
    if snapshot.result and snapshot.result.files_modified + snapshot.result.files_created:
        click.echo("Files: " + ", ".join(snapshot.result.files_created + snapshot.result.files_modified))
    if snapshot.error:
        raise click.ClickException(f"{snapshot.error.kind}: {snapshot.error.message}")
