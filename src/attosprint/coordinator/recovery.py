"""Full reconciliation pass: find work nobody owns anymore and requeue it.

Three sources of orphans are checked, each excluding tasks the driving
loop has slotted and agents it knows are running:

* assignment files left in the repository or in per-task worktrees,
* heartbeat files that stopped being refreshed,
* tracker tasks still ``in_progress`` under an agent assignee.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from attosprint.adapters.base import is_pid_alive, kill_process_tree
from attosprint.coordinator.crash_recovery import (
    delete_assignment_at,
    find_orphaned_assignments,
    find_orphaned_assignments_from_worktrees,
)
from attosprint.protocol.contracts import (
    BranchManager,
    HeartbeatStorage,
    IssueTracker,
    Notifier,
    RecoveryHost,
)
from attosprint.protocol.models import OrchestratorEvent

logger = logging.getLogger(__name__)

RECOVERED_COMMENT = "Recovered orphaned task: agent no longer running. Work preserved on branch, task requeued."


@dataclass(slots=True)
class RecoveryResult:
    requeued: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)

    @property
    def handled(self) -> set[str]:
        return set(self.requeued) | set(self.cleaned)


class RecoveryService:
    def __init__(
        self,
        tracker: IssueTracker,
        branch_manager: BranchManager,
        heartbeats: HeartbeatStorage,
        notifier: Notifier,
        *,
        stale_heartbeat_seconds: float = 120.0,
        kill_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int], bool] = is_pid_alive,
        kill_process: Callable[[int, int], None] = kill_process_tree,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._tracker = tracker
        self._branch_manager = branch_manager
        self._heartbeats = heartbeats
        self._notifier = notifier
        self._stale_after = stale_heartbeat_seconds
        self._kill_grace_seconds = kill_grace_seconds
        self._clock = clock
        self._pid_alive = pid_alive
        self._kill_process = kill_process
        self._sleep = sleep

    async def run_full_recovery(self, project_id: str, repo_path: Path, host: RecoveryHost) -> RecoveryResult:
        exclude = set(host.get_slotted_task_ids(project_id)) | set(host.get_active_agent_ids(project_id))
        result = RecoveryResult()
        await self.recover_orphaned_assignments(project_id, repo_path, exclude, result)
        await self.recover_from_stale_heartbeats(project_id, repo_path, exclude, result)
        await self.recover_orphaned_tasks(project_id, repo_path, exclude, result)
        return result

    async def recover_orphaned_assignments(
        self, project_id: str, repo_path: Path, exclude: set[str], result: RecoveryResult
    ) -> None:
        orphans = find_orphaned_assignments(repo_path)
        orphans += find_orphaned_assignments_from_worktrees(self._branch_manager.worktree_base)
        for orphan in orphans:
            task_id = orphan.task_id
            if task_id in exclude or task_id in result.handled:
                continue
            if orphan.assignment.project_id and orphan.assignment.project_id != project_id:
                continue
            record = self._heartbeats.read(orphan.base_path, task_id)
            if (
                record is not None
                and self._pid_alive(record.pid)
                and self._clock() - record.heartbeat_timestamp <= self._stale_after
            ):
                continue
            worktree = Path(orphan.assignment.worktree_path) if orphan.assignment.worktree_path else None
            await self.recover_one(project_id, repo_path, task_id, worktree, result)

    async def recover_from_stale_heartbeats(
        self, project_id: str, repo_path: Path, exclude: set[str], result: RecoveryResult
    ) -> None:
        bases = [Path(repo_path)]
        worktree_base = self._branch_manager.worktree_base
        if worktree_base.is_dir():
            bases += sorted(p for p in worktree_base.iterdir() if p.is_dir())
        for base in bases:
            for stale in self._heartbeats.find_stale(base, self._stale_after, now=self._clock()):
                task_id = stale.task_id
                if task_id in exclude or task_id in result.handled:
                    continue
                worktree = base if base != Path(repo_path) else None
                if self._pid_alive(stale.record.pid):
                    logger.warning("Killing unowned agent for %s (pid=%s, stale heartbeat)", task_id, stale.record.pid)
                    await self._commit_wip(worktree or self._branch_manager.get_worktree_path(task_id), task_id)
                    await self._terminate(stale.record.pid)
                await self.recover_one(project_id, repo_path, task_id, worktree, result)

    async def recover_orphaned_tasks(
        self, project_id: str, repo_path: Path, exclude: set[str], result: RecoveryResult
    ) -> None:
        try:
            in_progress = await self._tracker.list_in_progress_with_agent_assignee(repo_path)
        except Exception as exc:
            logger.warning("Could not list in-progress tasks for %s: %s", project_id, exc)
            return
        for task in in_progress:
            if task.id in exclude or task.id in result.handled:
                continue
            await self.recover_one(project_id, repo_path, task.id, None, result)

    async def recover_one(
        self,
        project_id: str,
        repo_path: Path,
        task_id: str,
        worktree_path: Path | None,
        result: RecoveryResult,
    ) -> None:
        """Commit what the agent left, drop its worktree and put the task back in the queue."""
        worktree = worktree_path or self._branch_manager.get_worktree_path(task_id)
        try:
            await self._commit_wip(worktree, task_id)
            await self._branch_manager.remove_task_worktree(repo_path, task_id, worktree)
            delete_assignment_at(repo_path, task_id)
            self._heartbeats.delete(repo_path, task_id)

            task = await self._tracker.show(repo_path, task_id)
            if task.status != "in_progress":
                result.cleaned.append(task_id)
                return
            await self._tracker.update(repo_path, task_id, status="open", assignee="")
            try:
                await self._tracker.comment(repo_path, task_id, RECOVERED_COMMENT)
            except Exception as exc:
                logger.debug("Could not comment on %s: %s", task_id, exc)
            self._notifier.emit(
                OrchestratorEvent(
                    type="task.updated",
                    project_id=project_id,
                    task_id=task_id,
                    payload={"status": "open", "assignee": None},
                )
            )
            result.requeued.append(task_id)
        except Exception as exc:
            logger.warning("Failed to recover orphaned task %s: %s", task_id, exc)

    async def _commit_wip(self, worktree: Path, task_id: str) -> None:
        if not worktree.exists():
            return
        try:
            await self._branch_manager.commit_wip(worktree, task_id)
        except Exception as exc:
            logger.warning("WIP commit failed for orphan %s: %s", task_id, exc)

    async def _terminate(self, pid: int) -> None:
        self._kill_process(pid, signal.SIGTERM)
        await self._sleep(self._kill_grace_seconds)
        if self._pid_alive(pid):
            self._kill_process(pid, signal.SIGKILL)
