"""Command line interface for flowline."""

from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .collaborators import CallableAgentRunner
from .config import configure_logging, load_config
from .definitions import load_definition_file
from .engine import WorkflowEngine
from .errors import FlowlineError
from .models import RunStatus, TaskStatus
from .persistence import get_repository
from .scheduler import TimerScheduler

app = typer.Typer(help="CLI for flowline workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
run_app = typer.Typer(help="Commands for managing workflow runs")
task_app = typer.Typer(help="Commands for working on tasks")
scheduler_app = typer.Typer(help="Commands for the timer scheduler")

app.add_typer(definition_app, name="definition")
app.add_typer(run_app, name="run")
app.add_typer(task_app, name="task")
app.add_typer(scheduler_app, name="scheduler")

AgentsOption = typer.Option(
    None, "--agents", help="Import path of a dict of agent callables, e.g. 'pkg.agents:AGENTS'"
)


@app.callback()
def main() -> None:
    """flowline CLI entry point."""
    config = load_config()
    configure_logging(config.logging.level)


def _load_agents(path: Optional[str]) -> CallableAgentRunner:
    if not path:
        return CallableAgentRunner()
    module_name, _, attribute = path.partition(":")
    module = importlib.import_module(module_name)
    return CallableAgentRunner(getattr(module, attribute or "AGENTS"))


def _engine(agents: Optional[str] = None) -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine(get_repository(), _load_agents(agents), config=config.engine)


def _parse_json(value: Optional[str], option: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"{option} is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho(f"{option} must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return data


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except FlowlineError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Definitions


@definition_app.command("load")
def definition_load(path: Path) -> None:
    """
    Validate a YAML or JSON definition file and store it.

    Example:
        flowline definition load ./workflows/loan_approval.yaml
    """
    engine = _engine()
    try:
        definition = load_definition_file(str(path))
    except FlowlineError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _run(engine.register_definition(definition))
    typer.echo(f"Loaded {definition.ref} ({len(list(definition.iter_steps()))} steps)")


@definition_app.command("list")
def definition_list() -> None:
    """List stored definitions and their versions."""
    definitions = _run(_engine().list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        typer.echo(f"{definition.name}\tv{definition.version}\t{definition.description or ''}")


# ----------------------------------------------------------------------
# Runs


@run_app.command("start")
def run_start(
    name: str,
    data: Optional[str] = typer.Option(None, help="Triggering data as a JSON object"),
    version: Optional[int] = typer.Option(None, help="Definition version (default: latest)"),
    user: Optional[str] = typer.Option(None, help="User starting the run"),
    agents: Optional[str] = AgentsOption,
) -> None:
    """
    Start a run and drive it until it waits on a task or ends.

    Example:
        flowline run start loan_approval --data '{"amount": 5000}'
    """
    payload = _parse_json(data, "--data")
    run = _run(_engine(agents).start_run(name, payload, version=version, triggered_by=user))
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    if run.current_step_name and not run.is_terminal:
        typer.echo(f"Current step: {run.current_step_name}")


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only runs with this status"),
    definition: Optional[str] = typer.Option(None, help="Only runs of this definition"),
) -> None:
    """List runs with their status and current step."""
    runs = _run(_engine().list_runs(status=status, definition_name=definition))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.run_id}\t{run.definition_name}@v{run.definition_version}\t"
            f"{run.status.value}\t{run.current_step_name or '-'}"
        )


@run_app.command("show")
def run_show(run_id: str) -> None:
    """Show a run's status, context and tasks."""
    engine = _engine()

    async def _load():
        run = await engine.get_run(run_id)
        return run, await engine.list_tasks(run_id=run_id)

    run, tasks = _run(_load())
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    typer.echo(f"Definition: {run.definition_name}@v{run.definition_version}")
    typer.echo(f"Current step: {run.current_step_name or '-'}")
    typer.echo(f"Context: {json.dumps(run.context, default=str)}")
    if run.failure:
        typer.echo(f"Failure: {run.failure.reason} at {run.failure.step_name}: {run.failure.message}")
    for name, cursor in run.active_parallel_branches.items():
        typer.echo(f"Branch {name}: {cursor.status.value} at {cursor.current_step}")
    for task in tasks:
        assignee = task.assigned_to_user_id or task.assigned_to_role or task.assigned_to_agent_id
        typer.echo(
            f"- {task.task_id} {task.step_name} [{task.type.value}] {task.status.value}"
            + (f" -> {assignee}" if assignee else "")
        )


@run_app.command("cancel")
def run_cancel(run_id: str, user: Optional[str] = typer.Option(None)) -> None:
    """Cancel a run and skip its open tasks."""
    run = _run(_engine().cancel_run(run_id, cancelled_by=user))
    typer.echo(f"Run {run.run_id}: {run.status.value}")


# ----------------------------------------------------------------------
# Tasks


@task_app.command("list")
def task_list(
    user: Optional[str] = typer.Option(None, help="Tasks assigned to this user"),
    role: Optional[str] = typer.Option(None, help="Tasks assigned to this role"),
    run_id: Optional[str] = typer.Option(None, "--run", help="Tasks of this run"),
    status: Optional[TaskStatus] = typer.Option(None, help="Only tasks with this status"),
) -> None:
    """List tasks for a user, a role or a run."""
    engine = _engine()

    async def _load():
        if user or role:
            tasks = await engine.tasks_for_user(user or "", role)
            return [t for t in tasks if status is None or t.status == status]
        return await engine.list_tasks(run_id=run_id, status=status)

    tasks = _run(_load())
    if not tasks:
        typer.echo("No tasks found")
        return
    for task in tasks:
        deadline = task.deadline_at.isoformat() if task.deadline_at else "-"
        typer.echo(
            f"{task.task_id}\t{task.run_id}\t{task.step_name}\t{task.type.value}\t"
            f"{task.status.value}\t{deadline}"
        )


@task_app.command("complete")
def task_complete(
    task_id: str,
    output: Optional[str] = typer.Option(None, help="Task output as a JSON object"),
    user: Optional[str] = typer.Option(None, help="User completing the task"),
    agents: Optional[str] = AgentsOption,
) -> None:
    """Complete a human task and advance its run."""
    payload = _parse_json(output, "--output")
    engine = _engine(agents)

    async def _complete():
        task = await engine.complete_task(task_id, payload, user_id=user)
        return task, await engine.get_run(task.run_id)

    task, run = _run(_complete())
    typer.echo(f"Task {task.task_id}: {task.status.value}")
    typer.echo(f"Run {run.run_id}: {run.status.value}")


@task_app.command("claim")
def task_claim(task_id: str, user: str) -> None:
    """Claim a role-assigned task."""
    task = _run(_engine().claim_task(task_id, user))
    typer.echo(f"Task {task.task_id} claimed by {task.assigned_to_user_id}")


@task_app.command("delegate")
def task_delegate(task_id: str, from_user: str, to_user: str) -> None:
    """Delegate a task from its current assignee to another user."""
    task = _run(_engine().delegate_task(task_id, from_user, to_user))
    typer.echo(f"Task {task.task_id} delegated to {task.assigned_to_user_id}")


@task_app.command("comment")
def task_comment(task_id: str, user: str, text: str) -> None:
    """Append a comment to a task."""
    engine = _engine()

    async def _comment():
        await engine.add_comment(task_id, user, text)
        return await engine.list_comments(task_id)

    for comment in _run(_comment()):
        typer.echo(f"[{comment.created_at.isoformat()}] {comment.user_id}: {comment.text}")


# ----------------------------------------------------------------------
# Scheduler


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(None, help="Seconds to run (default: forever)"),
    interval: Optional[float] = typer.Option(None, help="Poll interval in seconds"),
    agents: Optional[str] = AgentsOption,
) -> None:
    """
    Recover interrupted runs, then fire retry and escalation timers as they fall due.

    Example:
        flowline scheduler run --lifespan 300
    """
    config = load_config()
    scheduler = TimerScheduler(
        _engine(agents), interval or config.scheduler.poll_interval_seconds
    )
    typer.echo("Starting scheduler")
    _run(scheduler.run(lifespan=lifespan))


@scheduler_app.command("tick")
def scheduler_tick(agents: Optional[str] = AgentsOption) -> None:
    """Fire due timers once and exit."""
    fired = _run(TimerScheduler(_engine(agents)).tick())
    typer.echo(f"Fired {fired} timer(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
