"""Crash recovery: rebuild the orchestrator's view of the world after a restart.

On startup the persisted orchestrator state says which task was active,
on which branch, and which agent PID was running it.  Depending on what
survived, recovery either re-attaches to the live agent, fast-forwards
a coding attempt that finished while we were down, or rolls the attempt
back and requeues the task.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from attosprint.adapters.base import is_pid_alive, kill_process_tree
from attosprint.archive.sessions import SessionArchive, SessionManager
from attosprint.config.schema import TimingConfig
from attosprint.coordinator.active_agents import ActiveAgentsRegistry
from attosprint.coordinator.state_store import StateStore
from attosprint.coordinator.timer_registry import TimerRegistry
from attosprint.protocol.contracts import (
    BranchManager,
    HeartbeatStorage,
    IssueTracker,
    Notifier,
    PhaseHost,
    TestRunner,
)
from attosprint.protocol.io import file_size, read_bytes_from, read_json, unlink_quiet
from attosprint.protocol.models import (
    OrchestratorEvent,
    PersistedOrchestratorState,
    SprintPaths,
    TaskAssignment,
    active_dir,
    active_root,
)

logger = logging.getLogger(__name__)

RECOVERY_POLL_TIMER = "recovery-poll"
OUTPUT_TAIL_BYTES = 64 * 1024


class RecoveryOutcome(StrEnum):
    FRESH = "fresh"          # nothing was in flight
    RESUMED = "resumed"      # agent still alive, now polled
    ADVANCED = "advanced"    # finished coding attempt moved on to the next step
    REQUEUED = "requeued"    # attempt rolled back, task back in the queue


# ---------------------------------------------------------------------------
# Orphan scanning
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class OrphanedAssignment:
    task_id: str
    base_path: Path
    assignment: TaskAssignment


def _scan_active_dir(root: Path, base_path: Path, only: str | None = None) -> list[OrphanedAssignment]:
    if not root.is_dir():
        return []
    found: list[OrphanedAssignment] = []
    for entry in sorted(root.iterdir()):
        if not entry.is_dir() or entry.name.startswith(SprintPaths.RESERVED_PREFIX):
            continue
        if only is not None and entry.name != only:
            continue
        raw = read_json(entry / SprintPaths.ASSIGNMENT, default=None)
        if not isinstance(raw, dict):
            continue
        try:
            assignment = TaskAssignment.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            continue
        found.append(OrphanedAssignment(task_id=entry.name, base_path=base_path, assignment=assignment))
    return found


def find_orphaned_assignments(repo_path: str | Path) -> list[OrphanedAssignment]:
    """Assignments left in the repository's own active directory."""
    return _scan_active_dir(active_root(repo_path), Path(repo_path))


def find_orphaned_assignments_from_worktrees(worktree_base: str | Path) -> list[OrphanedAssignment]:
    """Assignments left inside per-task worktrees under *worktree_base*."""
    base = Path(worktree_base)
    if not base.is_dir():
        return []
    found: list[OrphanedAssignment] = []
    for worktree in sorted(base.iterdir()):
        if not worktree.is_dir() or worktree.name.startswith(SprintPaths.RESERVED_PREFIX):
            continue
        found.extend(_scan_active_dir(active_root(worktree), worktree, only=worktree.name))
    return found


def delete_assignment_at(base_path: str | Path, task_id: str) -> None:
    unlink_quiet(active_dir(base_path, task_id) / SprintPaths.ASSIGNMENT)


def read_output_log_tail(path: str | Path, max_bytes: int = OUTPUT_TAIL_BYTES) -> str:
    p = Path(path)
    size = file_size(p)
    data = read_bytes_from(p, max(0, size - max_bytes))
    return data.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Persisted-state recovery
# ---------------------------------------------------------------------------


class CrashRecoveryService:
    def __init__(
        self,
        tracker: IssueTracker,
        branch_manager: BranchManager,
        test_runner: TestRunner,
        sessions: SessionManager,
        archive: SessionArchive | None,
        heartbeats: HeartbeatStorage,
        state_store: StateStore,
        notifier: Notifier,
        active_agents: ActiveAgentsRegistry,
        *,
        timing: TimingConfig | None = None,
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int], bool] = is_pid_alive,
        kill_process: Callable[[int, int], None] = kill_process_tree,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._tracker = tracker
        self._branch_manager = branch_manager
        self._test_runner = test_runner
        self._sessions = sessions
        self._archive = archive
        self._heartbeats = heartbeats
        self._state_store = state_store
        self._notifier = notifier
        self._active_agents = active_agents
        self._timing = timing or TimingConfig()
        self._clock = clock
        self._pid_alive = pid_alive
        self._kill_process = kill_process
        self._sleep = sleep

    async def recover_from_persisted_state(
        self,
        project_id: str,
        repo_path: Path,
        persisted: PersistedOrchestratorState,
        host: PhaseHost,
        timers: TimerRegistry,
    ) -> RecoveryOutcome:
        if not persisted.current_task_id:
            logger.info("No task was in flight for %s, starting fresh", project_id)
            self._state_store.clear(repo_path)
            return RecoveryOutcome.FRESH

        pid = persisted.agent_pid
        if pid and self._pid_alive(pid):
            return await self.handle_alive_pid(project_id, repo_path, persisted, host, timers)

        logger.warning(
            "Agent for task %s (pid=%s) did not survive the restart", persisted.current_task_id, pid
        )
        return await self.perform_crash_recovery(project_id, repo_path, persisted, host)

    async def handle_alive_pid(
        self,
        project_id: str,
        repo_path: Path,
        persisted: PersistedOrchestratorState,
        host: PhaseHost,
        timers: TimerRegistry,
    ) -> RecoveryOutcome:
        task_id = persisted.current_task_id or ""
        pid = persisted.agent_pid or 0
        base = self._base_path(repo_path, persisted)
        last_output = self._last_output_time(base, task_id, persisted.last_output_timestamp)
        timeout = self._timing.inactivity_timeout_seconds

        if self._clock() - last_output > timeout:
            logger.warning("Surviving agent for task %s (pid=%s) is silent past the limit, killing", task_id, pid)
            await self._commit_wip(base, task_id)
            await self._terminate(pid)
            return await self.perform_crash_recovery(project_id, repo_path, persisted, host)

        phase = persisted.current_phase or "coding"
        self._active_agents.register(
            task_id,
            project_id,
            phase,
            f"{phase} agent (recovered)",
            started_at=persisted.started_at,
            branch_name=persisted.branch_name,
        )
        host.reattach(project_id, repo_path, persisted)
        logger.info("Re-attached to agent for task %s (pid=%s), polling for exit", task_id, pid)

        async def poll() -> None:
            nonlocal last_output
            last_output = self._last_output_time(base, task_id, last_output)
            branch = persisted.branch_name or ""
            if not self._pid_alive(pid):
                timers.clear(RECOVERY_POLL_TIMER)
                self._active_agents.unregister(task_id)
                task = await self._tracker.show(repo_path, task_id)
                if phase == "review":
                    await host.handle_review_done(project_id, repo_path, task, branch, None)
                else:
                    await host.handle_coding_done(project_id, repo_path, task, branch, None)
                return
            if self._clock() - last_output > timeout:
                timers.clear(RECOVERY_POLL_TIMER)
                await self._commit_wip(base, task_id)
                await self._terminate(pid)
                self._active_agents.unregister(task_id)
                task = await self._tracker.show(repo_path, task_id)
                await host.fail_task(
                    project_id,
                    repo_path,
                    task,
                    branch,
                    f"Agent timed out after backend restart (no output for {timeout / 60:.0f} minutes)",
                )

        timers.set_interval(RECOVERY_POLL_TIMER, poll, self._timing.recovery_poll_seconds)
        return RecoveryOutcome.RESUMED

    async def perform_crash_recovery(
        self,
        project_id: str,
        repo_path: Path,
        persisted: PersistedOrchestratorState,
        host: PhaseHost,
    ) -> RecoveryOutcome:
        task_id = persisted.current_task_id or ""
        branch = persisted.branch_name or ""

        if await self.try_advance_to_review(project_id, repo_path, persisted, host):
            return RecoveryOutcome.ADVANCED

        self._state_store.clear(repo_path)
        base = self._base_path(repo_path, persisted)

        commits = await self._branch_manager.get_commit_count_ahead(repo_path, branch) if branch else 0
        diff = ""
        if branch:
            try:
                diff = await self._branch_manager.capture_branch_diff(repo_path, branch)
            except Exception as exc:
                logger.debug("Could not capture diff for %s: %s", branch, exc)

        await self._archive_crashed(project_id, repo_path, persisted, base, diff)

        worktree = Path(persisted.worktree_path) if persisted.worktree_path else None
        try:
            await self._branch_manager.remove_task_worktree(repo_path, task_id, worktree)
        except Exception as exc:
            logger.warning("Could not remove worktree for %s: %s", task_id, exc)

        if commits > 0:
            noun = "commit" if commits == 1 else "commits"
            message = (
                f"Agent crashed (backend restart). Branch preserved with {commits} {noun} for next attempt."
            )
        else:
            if branch:
                try:
                    await self._branch_manager.delete_branch(repo_path, branch)
                except Exception as exc:
                    logger.debug("Could not delete branch %s: %s", branch, exc)
            message = "Agent crashed (backend restart). No committed work found, task requeued."

        try:
            await self._tracker.comment(repo_path, task_id, message)
        except Exception as exc:
            logger.warning("Could not comment on %s: %s", task_id, exc)

        delete_assignment_at(repo_path, task_id)
        self._active_agents.unregister(task_id)
        await self._tracker.update(repo_path, task_id, status="open", assignee="")
        self._notifier.emit(
            OrchestratorEvent(
                type="task.updated",
                project_id=project_id,
                task_id=task_id,
                payload={"status": "open", "assignee": None},
            )
        )
        logger.info("Requeued task %s after crash (%d commits ahead)", task_id, commits)
        return RecoveryOutcome.REQUEUED

    async def try_advance_to_review(
        self,
        project_id: str,
        repo_path: Path,
        persisted: PersistedOrchestratorState,
        host: PhaseHost,
    ) -> bool:
        """Move a coding attempt that finished during the outage straight to its next step.

        Only when the agent reported success, left commits on its branch
        and the scoped tests still pass.
        """
        task_id = persisted.current_task_id or ""
        branch = persisted.branch_name or ""
        if persisted.current_phase != "coding" or not branch:
            return False
        base = self._base_path(repo_path, persisted)
        result = self._sessions.read_result(base, task_id)
        if not result or result.get("status") != "success":
            return False
        try:
            if await self._branch_manager.get_commit_count_ahead(repo_path, branch) <= 0:
                return False
            changed = await self._branch_manager.get_changed_files(repo_path, branch)
            tests = await self._test_runner.run_scoped_tests(base, changed)
            if not tests.ok:
                logger.info("Task %s finished coding during outage but tests fail; rolling back", task_id)
                return False
            task = await self._tracker.show(repo_path, task_id)
            await host.advance_past_coding(project_id, repo_path, task, persisted)
        except Exception:
            logger.exception("Could not advance recovered task %s past coding", task_id)
            return False
        logger.info("Task %s finished coding during outage; advancing", task_id)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _base_path(repo_path: Path, persisted: PersistedOrchestratorState) -> Path:
        return Path(persisted.worktree_path) if persisted.worktree_path else Path(repo_path)

    def _last_output_time(self, base: Path, task_id: str, known: float | None) -> float:
        """Best-known time of the agent's last output.

        The heartbeat file wins, then *known*, then now.  An output log
        modified later than that counts as newer output: a re-attached
        agent keeps appending to it while nobody refreshes the heartbeat.
        """
        record = self._heartbeats.read(base, task_id)
        if record is not None:
            best = record.last_output_timestamp
        elif known:
            best = known
        else:
            best = self._clock()
        try:
            mtime = (active_dir(base, task_id) / SprintPaths.OUTPUT_LOG).stat().st_mtime
        except OSError:
            return best
        return max(best, mtime)

    async def _commit_wip(self, base: Path, task_id: str) -> None:
        try:
            await self._branch_manager.commit_wip(base, task_id)
        except Exception as exc:
            logger.warning("WIP commit failed for task %s: %s", task_id, exc)

    async def _terminate(self, pid: int) -> None:
        self._kill_process(pid, signal.SIGTERM)
        await self._sleep(self._timing.kill_grace_seconds)
        if self._pid_alive(pid):
            self._kill_process(pid, signal.SIGKILL)

    async def _archive_crashed(
        self,
        project_id: str,
        repo_path: Path,
        persisted: PersistedOrchestratorState,
        base: Path,
        diff: str,
    ) -> None:
        if self._archive is None or not persisted.current_task_id:
            return
        task_id = persisted.current_task_id
        try:
            output = read_output_log_tail(active_dir(base, task_id) / SprintPaths.OUTPUT_LOG)
            session = self._archive.create_session(
                task_id=task_id,
                attempt=persisted.attempt,
                agent_type="",
                agent_model="",
                started_at=persisted.started_at or persisted.last_transition,
                status="crashed",
                output_log=output,
                git_branch=persisted.branch_name or "",
                git_diff=diff,
                failure_reason="Agent crashed (backend restart)",
            )
            await self._archive.archive_session(
                repo_path,
                task_id,
                persisted.attempt,
                session,
                worktree_path=base if base != Path(repo_path) else None,
                project_id=project_id,
            )
        except Exception as exc:
            logger.warning("Could not archive crashed session for %s: %s", task_id, exc)
