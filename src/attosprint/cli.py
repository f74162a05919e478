"""CLI entrypoint for attosprint."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path

import click

from attosprint.archive.sessions import SessionArchive
from attosprint.config.loader import DEFAULT_CONFIG_NAME, load_sprint_yaml
from attosprint.config.schema import SprintYamlConfig
from attosprint.coordinator.crash_recovery import (
    find_orphaned_assignments,
    find_orphaned_assignments_from_worktrees,
)
from attosprint.coordinator.event_bus import load_events
from attosprint.coordinator.state_store import StateStore
from attosprint.coordinator.workflow import WorkflowEngine, load_workflow
from attosprint.errors import AttosprintError, WorkflowValidationError
from attosprint.protocol.models import SprintPaths, TrackerTask
from attosprint.runtime import build_runtime, resolve_archive_db
from attosprint.utilities.logger import setup_logging
from attosprint.workspace.tracker import JsonFileTracker
from attosprint.workspace.worktree import GitBranchManager

logger = logging.getLogger(__name__)

_repo_arg = click.argument(
    "repo", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".", required=False
)


class _NoSlots:
    """Recovery host for one-off CLI passes: nothing is slotted or running here."""

    def get_slotted_task_ids(self, project_id: str) -> list[str]:
        return []

    def get_active_agent_ids(self, project_id: str) -> list[str]:
        return []


def _config(ctx: click.Context) -> SprintYamlConfig:
    return ctx.obj["config"]


@click.group()
@click.option(
    "--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=DEFAULT_CONFIG_NAME,
    help="Path to attosprint.yaml",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def main(ctx: click.Context, config_path: Path, debug: bool, json_logs: bool) -> None:
    """attosprint coding-agent supervisor."""
    setup_logging(debug=debug, json_output=json_logs)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_sprint_yaml(config_path)
    except AttosprintError as exc:
        raise click.ClickException(str(exc)) from exc


# ---------------------------------------------------------------------------
# workflow
# ---------------------------------------------------------------------------


@main.group("workflow")
def workflow_group() -> None:
    """Inspect the repository's workflow definition."""


@workflow_group.command("validate")
@_repo_arg
def workflow_validate(repo: Path) -> None:
    try:
        definition = load_workflow(repo)
    except WorkflowValidationError as exc:
        click.echo(str(exc), err=True)
        for issue in exc.issues:
            click.echo(f"  - {issue}", err=True)
        raise SystemExit(1) from exc
    click.echo(f"OK: {definition.id} v{definition.version} ({len(definition.steps)} steps)")


@workflow_group.command("order")
@_repo_arg
def workflow_order(repo: Path) -> None:
    try:
        definition = load_workflow(repo)
        steps = WorkflowEngine().topological_sort(definition)
    except WorkflowValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    for i, step in enumerate(steps, start=1):
        deps = ", ".join(step.depends_on) or "-"
        click.echo(f"{i}. {step.id:<12} {step.agent_role:<9} after: {deps}")


# ---------------------------------------------------------------------------
# state / orphans / sessions
# ---------------------------------------------------------------------------


@main.group("state")
def state_group() -> None:
    """Persisted orchestrator state."""


@state_group.command("show")
@_repo_arg
def state_show(repo: Path) -> None:
    state = StateStore().load(repo)
    if state is None:
        click.echo("No persisted state.")
        return
    click.echo(json.dumps(state.to_dict(), indent=2))


@main.command("orphans")
@_repo_arg
@click.option("--worktree-base", type=click.Path(file_okay=False, path_type=Path), default=None)
@click.pass_context
def orphans_command(ctx: click.Context, repo: Path, worktree_base: Path | None) -> None:
    """List assignment files with no running supervisor behind them."""
    base = worktree_base or GitBranchManager(_config(ctx).pipeline.worktree_base or None).worktree_base
    found = find_orphaned_assignments(repo) + find_orphaned_assignments_from_worktrees(base)
    if not found:
        click.echo("No orphaned assignments.")
        return
    for orphan in found:
        a = orphan.assignment
        click.echo(
            f"{orphan.task_id:<16} {a.phase:<7} attempt={a.attempt} branch={a.branch_name} at {orphan.base_path}"
        )


@main.group("sessions")
def sessions_group() -> None:
    """Archived agent sessions."""


@sessions_group.command("list")
@click.argument("task_id")
@_repo_arg
@click.option(
    "--db", "db_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
    help="Session database (default: archive.db_path, else the repo's own)",
)
@click.pass_context
def sessions_list(ctx: click.Context, task_id: str, repo: Path, db_path: Path | None) -> None:
    db = db_path or resolve_archive_db(_config(ctx), {repo.name: repo})

    async def _list() -> None:
        archive = SessionArchive(db)
        await archive.initialize()
        try:
            sessions = await archive.list_sessions(task_id)
        finally:
            await archive.close()
        if not sessions:
            click.echo(f"No sessions for {task_id}.")
            return
        for s in sessions:
            took = s.completed_at - s.started_at
            reason = f"  ({s.failure_reason})" if s.failure_reason else ""
            click.echo(f"#{s.attempt:<3} {s.status:<9} {s.agent_type}:{s.agent_model or 'default'} {took:.0f}s{reason}")

    asyncio.run(_list())


@main.command("events")
@_repo_arg
@click.option("--task", "task_id", default=None, help="Only events for this task")
@click.option("-n", "limit", default=20, type=int, show_default=True, help="Number of events to show")
@click.pass_context
def events_command(ctx: click.Context, repo: Path, task_id: str | None, limit: int) -> None:
    """Show the most recent orchestrator events from the event log."""
    db = resolve_archive_db(_config(ctx), {repo.name: repo})
    events = load_events(db.parent / Path(SprintPaths.EVENTS).name, task_id=task_id, limit=limit)
    if not events:
        click.echo("No events.")
        return
    for e in events:
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.timestamp))
        payload = json.dumps(e.payload, sort_keys=True) if e.payload else ""
        click.echo(f"{stamp} {e.type:<16} {e.task_id or '-':<12} {payload}".rstrip())


# ---------------------------------------------------------------------------
# tasks (file-backed tracker)
# ---------------------------------------------------------------------------


@main.group("tasks")
def tasks_group() -> None:
    """Manage tasks in .attosprint/tasks.json."""


@tasks_group.command("add")
@click.argument("title")
@_repo_arg
@click.option("--id", "task_id", default=None, help="Task id (default: derived from time)")
@click.option("--description", default="", help="Task description")
@click.option("--priority", default=2, type=int)
@click.option("--blocked-by", multiple=True, help="Ids of blocking tasks")
def tasks_add(
    title: str, repo: Path, task_id: str | None, description: str, priority: int, blocked_by: tuple[str, ...]
) -> None:
    tid = task_id or f"t{int(time.time())}"
    task = TrackerTask(
        id=tid, title=title, description=description, priority=priority, blocked_by=list(blocked_by)
    )
    asyncio.run(JsonFileTracker().add(repo, task))
    click.echo(f"Added {tid}")


@tasks_group.command("list")
@_repo_arg
def tasks_list(repo: Path) -> None:
    for task in asyncio.run(JsonFileTracker().list_all(repo)):
        click.echo(f"{task.id:<16} {task.status:<12} {task.title}")


# ---------------------------------------------------------------------------
# recover / run
# ---------------------------------------------------------------------------


@main.command("recover")
@_repo_arg
@click.option("--project-id", default=None, help="Project id (default: repo directory name)")
@click.pass_context
def recover_command(ctx: click.Context, repo: Path, project_id: str | None) -> None:
    """Run one reconciliation pass and requeue orphaned work."""
    repo = repo.resolve()
    projects = {project_id or repo.name: repo}
    runtime = build_runtime(_config(ctx), projects, resolve_archive_db(_config(ctx), projects))
    result = asyncio.run(runtime.recovery.run_full_recovery(project_id or repo.name, repo, _NoSlots()))
    click.echo(f"Requeued: {', '.join(result.requeued) or 'none'}")
    click.echo(f"Cleaned:  {', '.join(result.cleaned) or 'none'}")


@main.command("run")
@click.argument("repos", nargs=-1, type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_context
def run_command(ctx: click.Context, repos: tuple[Path, ...]) -> None:
    """Supervise agents for REPOS (or the projects listed in the config) until interrupted."""
    cfg = _config(ctx)
    projects = {p.resolve().name: p.resolve() for p in repos}
    for proj in cfg.projects:
        projects.setdefault(proj.project_id, Path(proj.repo_path).resolve())
    if not projects:
        raise click.UsageError("No repositories given and no projects configured.")
    runtime = build_runtime(cfg, projects, resolve_archive_db(cfg, projects))

    async def _run() -> None:
        await runtime.start()
        click.echo(f"Supervising {', '.join(projects)} (Ctrl-C to stop)")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await runtime.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped. Running agents were left alive and will be re-attached on next start.")
