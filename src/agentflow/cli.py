from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from agentflow.backends import AgentSession, ClaudeCliAgentSession, EchoAgentSession
from agentflow.config import (
    DEFAULT_CONFIG_FILE,
    AgentflowConfig,
    BackendName,
    load_config,
    save_config,
)
from agentflow.engine import OrchestrationEngine
from agentflow.errors import AgentflowError
from agentflow.healer import SelfHealer
from agentflow.models import TaskState
from agentflow.monitoring import (
    CompositeRecorder,
    EventLogRecorder,
    LoggingRecorder,
    MonitoringRecorder,
)
from agentflow.service import PlanService, format_comparison_summary, format_plan_summary
from agentflow.state import ProgressStore


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AgentflowConfig
    store: ProgressStore
    service: PlanService
    engine: OrchestrationEngine
    events: EventLogRecorder | None


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_agents(
    backend_name: BackendName, config: AgentflowConfig, repo_root: Path
) -> AgentSession:
    if backend_name == "echo":
        return EchoAgentSession()
    return ClaudeCliAgentSession(
        binary=config.backend.binary,
        working_directory=repo_root,
        model=config.backend.model or None,
    )


def _build_store(config: AgentflowConfig, repo_root: Path) -> ProgressStore:
    state_root = Path(config.state.root)
    if not state_root.is_absolute():
        state_root = repo_root / state_root
    return ProgressStore(state_root, lock_timeout_seconds=float(config.state.lock_timeout_seconds))


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config.logging.level)
    store = _build_store(config, repo_root)
    events = EventLogRecorder(store) if config.logging.event_log else None
    recorders: list[MonitoringRecorder] = [LoggingRecorder(logging.DEBUG)]
    if events is not None:
        recorders.append(events)
    engine = OrchestrationEngine(
        store,
        _build_agents(config.backend.primary, config, repo_root),
        recorder=CompositeRecorder(recorders),
        healer=SelfHealer(store, max_attempts=max(0, int(config.workflow.self_heal_max_attempts))),
        task_timeout_seconds=max(1.0, float(config.backend.timeout_seconds)),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        service=PlanService(store, repo_root=repo_root),
        engine=engine,
        events=events,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@click.group()
def cli() -> None:
    """Agentflow CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "echo"]), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    store = _build_store(config, repo_root)
    store.sessions_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Agentflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"State root: {store.root}")


@cli.command("plan")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--session-id", default=None, help="Replan an existing session or pick the id.")
@config_option
def plan_command(plan_file: Path, session_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = json.loads(plan_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid plan JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise click.ClickException("Plan file must contain a JSON object.")
    try:
        created = runtime.service.create_plan(
            payload.get("task_description", ""),
            payload.get("synopsis", ""),
            payload.get("tasks", []),
            session_id=session_id or payload.get("session_id"),
        )
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(format_plan_summary(created.session_id, created.plan, created.progress))


@cli.command("run")
@click.argument("session_id")
@config_option
def run_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.engine.run(session_id))
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Session {summary.session_id}: {summary.status.value}")
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks} completed")
    if summary.failed_tasks:
        click.echo(f"Failed: {summary.failed_tasks}")
    if summary.cancelled:
        click.echo("Stopped by cancellation request.")


@cli.command("status")
@click.argument("session_id")
@click.option("--events", "event_limit", type=int, default=0, help="Include recent events.")
@config_option
def status_command(session_id: str, event_limit: int, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.engine.status(session_id)
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if event_limit > 0 and runtime.events is not None:
        payload["events"] = runtime.events.read_events(session_id, limit=event_limit)
    _echo_json(payload)


@cli.command("update")
@click.argument("session_id")
@click.argument("task_id")
@click.argument("state", type=click.Choice([item.value for item in TaskState]))
@click.option("--agent-session-id", default=None)
@click.option("--file", "files_modified", multiple=True, help="File modified by the task.")
@click.option("--summary", default=None)
@config_option
def update_command(
    session_id: str,
    task_id: str,
    state: str,
    agent_session_id: str | None,
    files_modified: tuple[str, ...],
    summary: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        task = runtime.service.update_progress(
            session_id,
            task_id,
            state,
            agent_session_id=agent_session_id,
            files_modified=list(files_modified) if files_modified else None,
            summary=summary,
        )
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{task.id}: {task.state.value}")


@cli.command("compare")
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def compare_command(session_id: str, as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        report = runtime.service.compare_plan_progress(session_id)
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        _echo_json(report)
        return
    click.echo(format_comparison_summary(report))


@cli.command("failed")
@click.argument("session_id")
@config_option
def failed_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        failed = runtime.service.get_failed_tasks(session_id)
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc
    if not failed:
        click.echo("No failed tasks.")
        return
    _echo_json(failed)


@cli.command("cancel")
@click.argument("session_id")
@config_option
def cancel_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.engine.request_cancel(session_id)
    except AgentflowError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cancellation requested for {session_id}; the run stops before its next task.")


@cli.command("sessions")
@config_option
def sessions_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    sessions = runtime.store.list_sessions()
    if not sessions:
        click.echo("No sessions found.")
        return
    for session_id in sessions:
        try:
            progress = runtime.store.load_progress(session_id)
        except AgentflowError as exc:
            click.echo(f"{session_id} unreadable: {exc}")
            continue
        completed = len(progress.in_state(TaskState.COMPLETED))
        click.echo(f"{session_id} {completed}/{len(progress.tasks)} {progress.last_updated}")


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["claude", "echo"]))
@config_option
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
