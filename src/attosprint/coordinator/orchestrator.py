"""Driving loop: pick ready tasks and walk them through their workflow.

One task occupies a project's slot at a time.  Each workflow step is
either an agent run (coder, reviewer) handed to the lifecycle manager,
or a merge done in-process.  The orchestrator is also the host that
crash recovery and the watchdog call back into.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from attosprint.adapters.base import PidAgentHandle, is_pid_alive
from attosprint.archive.sessions import SessionArchive, SessionManager
from attosprint.config.schema import AgentConfig, TimingConfig
from attosprint.config.settings import ProjectSettings
from attosprint.coordinator.active_agents import ActiveAgentsRegistry
from attosprint.coordinator.crash_recovery import (
    CrashRecoveryService,
    RecoveryOutcome,
    find_orphaned_assignments,
    find_orphaned_assignments_from_worktrees,
)
from attosprint.coordinator.lifecycle import AgentLifecycleManager, AgentRunParams, AgentRunState
from attosprint.coordinator.prompts import render_prompt
from attosprint.coordinator.state_store import StateStore
from attosprint.coordinator.timer_registry import TimerRegistry
from attosprint.coordinator.workflow import DEFAULT_WORKFLOW, WorkflowEngine, load_workflow
from attosprint.errors import WorkflowValidationError
from attosprint.protocol.contracts import (
    BranchManager,
    ExitCallback,
    HeartbeatStorage,
    IssueTracker,
    Notifier,
    SettingsProvider,
    TestRunner,
)
from attosprint.protocol.models import (
    PHASE_BY_ROLE,
    OrchestratorEvent,
    PersistedOrchestratorState,
    SessionStatus,
    TaskAssignment,
    TestResults,
    TrackerTask,
    WorkflowDefinition,
    WorkflowExecutionState,
    WorkflowStep,
)
from attosprint.utilities.logger import task_log_context
from attosprint.workspace.tracker import AGENT_ASSIGNEE_PREFIX

logger = logging.getLogger(__name__)

LOOP_TIMER = "loop"
DEFAULT_RETRY_LIMIT = 2


@dataclass(slots=True)
class OrchestratorStatus:
    running: bool = False
    current_task_id: str | None = None
    current_phase: str | None = None
    queue_depth: int = 0
    total_completed: int = 0
    total_failed: int = 0


@dataclass(slots=True)
class ProjectRuntime:
    project_id: str
    repo_path: Path
    timers: TimerRegistry
    run_state: AgentRunState = field(default_factory=AgentRunState)
    status: OrchestratorStatus = field(default_factory=OrchestratorStatus)
    loop_active: bool = False
    current_task: TrackerTask | None = None
    branch_name: str | None = None
    worktree_path: Path | None = None
    attempt: int = 1
    workflow: WorkflowDefinition | None = None
    execution: WorkflowExecutionState | None = None
    step_attempts: dict[str, int] = field(default_factory=dict)
    feedback: str | None = None

    @property
    def base_path(self) -> Path:
        return self.worktree_path or self.repo_path


class Orchestrator:
    """Per-project task pipeline.

    Usage::

        orch = Orchestrator(tracker=..., branch_manager=..., ...)
        orch.register_project("web", Path("/srv/web"))
        await orch.ensure_running("web")
    """

    def __init__(
        self,
        *,
        tracker: IssueTracker,
        branch_manager: BranchManager,
        test_runner: TestRunner,
        settings: SettingsProvider,
        lifecycle: AgentLifecycleManager,
        crash_recovery: CrashRecoveryService,
        sessions: SessionManager,
        archive: SessionArchive | None,
        heartbeats: HeartbeatStorage,
        state_store: StateStore,
        notifier: Notifier,
        active_agents: ActiveAgentsRegistry,
        timing: TimingConfig | None = None,
        engine: WorkflowEngine | None = None,
        branch_prefix: str = "attosprint/",
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int], bool] = is_pid_alive,
    ) -> None:
        self._tracker = tracker
        self._branch_manager = branch_manager
        self._test_runner = test_runner
        self._settings = settings
        self._lifecycle = lifecycle
        self._crash_recovery = crash_recovery
        self._sessions = sessions
        self._archive = archive
        self._heartbeats = heartbeats
        self._state_store = state_store
        self._notifier = notifier
        self._active_agents = active_agents
        self._timing = timing or TimingConfig()
        self._engine = engine or WorkflowEngine()
        self._branch_prefix = branch_prefix
        self._clock = clock
        self._pid_alive = pid_alive
        self._projects: dict[str, ProjectRuntime] = {}

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def register_project(self, project_id: str, repo_path: Path) -> ProjectRuntime:
        rt = self._projects.get(project_id)
        if rt is None:
            rt = ProjectRuntime(project_id=project_id, repo_path=Path(repo_path), timers=TimerRegistry(project_id))
            self._projects[project_id] = rt
        return rt

    def runtime(self, project_id: str) -> ProjectRuntime:
        try:
            return self._projects[project_id]
        except KeyError:
            raise KeyError(f"Unknown project: {project_id}") from None

    @property
    def project_ids(self) -> list[str]:
        return list(self._projects)

    def get_status(self, project_id: str) -> OrchestratorStatus:
        return self.runtime(project_id).status

    def get_slotted_task_ids(self, project_id: str) -> list[str]:
        rt = self._projects.get(project_id)
        if rt is None or rt.current_task is None:
            return []
        return [rt.current_task.id]

    def get_active_agent_ids(self, project_id: str) -> list[str]:
        return self._active_agents.ids(project_id)

    async def ensure_running(self, project_id: str) -> RecoveryOutcome | None:
        """Start the loop for *project_id*, recovering whatever was in flight first."""
        rt = self.runtime(project_id)
        if rt.status.running:
            self.nudge(project_id)
            return None
        rt.status.running = True
        self._emit(rt, "build.status", "", {"running": True})

        outcome: RecoveryOutcome | None = None
        persisted = self._state_store.load(rt.repo_path)
        if persisted is not None:
            rt.status.total_completed = persisted.total_completed
            rt.status.total_failed = persisted.total_failed
            outcome = await self._crash_recovery.recover_from_persisted_state(
                project_id, rt.repo_path, persisted, self, rt.timers
            )
            logger.info("Recovery for %s finished: %s", project_id, outcome)
        else:
            await self._resume_orphaned_agent(rt)
        self.nudge(project_id)
        return outcome

    def nudge(self, project_id: str) -> None:
        """Schedule one loop iteration unless the slot is busy or a loop is already running."""
        rt = self.runtime(project_id)
        if not rt.status.running or rt.loop_active or rt.current_task is not None:
            return
        rt.timers.set_timeout(LOOP_TIMER, lambda: self._run_loop(project_id), 0)

    async def shutdown(self) -> None:
        """Stop timers; running agents are left alive for recovery to re-attach."""
        for rt in self._projects.values():
            rt.timers.clear_all()
            rt.status.running = False
            self._emit(rt, "build.status", "", {"running": False})

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, project_id: str) -> None:
        with task_log_context(project_id):
            await self._loop_iteration(project_id)

    async def _loop_iteration(self, project_id: str) -> None:
        rt = self.runtime(project_id)
        if rt.loop_active or rt.current_task is not None or not rt.status.running:
            return
        rt.loop_active = True
        try:
            ready = await self._tracker.ready(rt.repo_path)
            rt.status.queue_depth = len(ready)
            candidate: TrackerTask | None = None
            for task in ready:
                if await self._tracker.are_all_blockers_closed(rt.repo_path, task.id):
                    candidate = task
                    break
            if candidate is None:
                rt.timers.set_timeout(LOOP_TIMER, lambda: self._run_loop(project_id), self._timing.loop_idle_seconds)
                return
            workflow = load_workflow(rt.repo_path, self._engine)
            await self._start_task(rt, candidate, workflow)
        except WorkflowValidationError as exc:
            logger.error("Invalid workflow for %s, stopping: %s (%s)", project_id, exc, "; ".join(exc.issues))
            rt.status.running = False
            self._emit(rt, "build.status", "", {"running": False, "error": str(exc)})
        except Exception:
            logger.exception("Loop iteration failed for %s", project_id)
            rt.timers.set_timeout(LOOP_TIMER, lambda: self._run_loop(project_id), self._timing.loop_idle_seconds)
        finally:
            rt.loop_active = False
        # A task that failed while the loop held the slot could not nudge; pick up the next one.
        if rt.status.running and rt.current_task is None and not rt.timers.has(LOOP_TIMER):
            self.nudge(project_id)

    async def _start_task(self, rt: ProjectRuntime, task: TrackerTask, workflow: WorkflowDefinition) -> None:
        attempts = await self._tracker.get_cumulative_attempts(rt.repo_path, task.id) + 1
        await self._tracker.set_cumulative_attempts(rt.repo_path, task.id, attempts)
        await self._tracker.update(
            rt.repo_path, task.id, status="in_progress", assignee=f"{AGENT_ASSIGNEE_PREFIX}{rt.project_id}"
        )
        rt.current_task = task
        rt.attempt = attempts
        rt.branch_name = f"{self._branch_prefix}{task.id}"
        rt.worktree_path = None
        rt.run_state = AgentRunState()
        rt.step_attempts = {}
        rt.feedback = None
        rt.workflow = workflow
        rt.execution = self._engine.init_execution_state(workflow, task.id)
        rt.status.current_task_id = task.id
        rt.status.current_phase = None
        logger.info("Starting task %s (attempt %d) with workflow %s", task.id, attempts, workflow.id)
        self._emit(rt, "task.updated", task.id, {"status": "in_progress", "attempt": attempts})
        self._persist(rt)
        await self._advance(rt)

    async def _advance(self, rt: ProjectRuntime) -> None:
        assert rt.workflow is not None and rt.execution is not None and rt.current_task is not None
        settings = self._settings.get_settings(rt.project_id)
        while True:
            if self._engine.is_complete(rt.execution):
                await self._complete_task(rt)
                return
            step = self._engine.get_next_step(rt.workflow, rt.execution)
            if step is None:
                if self._engine.is_stuck(rt.workflow, rt.execution):
                    await self.fail_task(
                        rt.project_id,
                        rt.repo_path,
                        rt.current_task,
                        rt.branch_name or "",
                        "Workflow stuck: no runnable step",
                    )
                return
            self._engine.mark_step(rt.execution, step.id, "in_progress")
            rt.step_attempts[step.id] = rt.step_attempts.get(step.id, 0) + 1

            if step.agent_role == "reviewer" and settings.review_mode == "never":
                # Review disabled: the step is satisfied so dependents still run.
                self._engine.mark_step(rt.execution, step.id, "completed")
                continue
            if step.agent_role == "merger":
                await self._execute_merge_step(rt, step, settings)
                return
            await self._execute_agent_step(rt, step, settings)
            return

    async def _execute_agent_step(self, rt: ProjectRuntime, step: WorkflowStep, settings: ProjectSettings) -> None:
        assert rt.current_task is not None
        task = rt.current_task
        branch = rt.branch_name or ""
        phase = PHASE_BY_ROLE[step.agent_role]
        try:
            if rt.worktree_path is None:
                rt.worktree_path = await self._branch_manager.create_task_worktree(rt.repo_path, task.id, branch)
            wt = rt.worktree_path
            config = self._agent_config_for(rt, step, settings)
            prompt_path = self._sessions.write_prompt(wt, task.id, render_prompt(task, phase, branch, rt.feedback))
            self._sessions.clear_result(wt, task.id)
            self._sessions.write_assignment(
                wt,
                TaskAssignment(
                    task_id=task.id,
                    project_id=rt.project_id,
                    phase=phase,
                    branch_name=branch,
                    worktree_path=str(wt),
                    prompt_path=str(prompt_path),
                    agent_config=config,
                    attempt=rt.attempt,
                ),
            )
            rt.status.current_phase = phase
            label = f"{config.type}:{config.model or 'default'}"
            self._active_agents.register(task.id, rt.project_id, phase, label, branch_name=branch)
            params = AgentRunParams(
                project_id=rt.project_id,
                task_id=task.id,
                phase=phase,
                worktree_path=wt,
                branch_name=branch,
                prompt_path=prompt_path,
                agent_config=config,
                agent_label=label,
                role=step.agent_role,
                on_done=self._phase_done_callback(rt, phase, task, branch),
                attempt=rt.attempt,
            )
            self._persist(rt)
            await self._lifecycle.run(params, rt.run_state, rt.timers)
            self._persist(rt)
        except Exception as exc:
            logger.exception("Could not start %s agent for %s", phase, task.id)
            self._active_agents.unregister(task.id)
            await self.fail_task(rt.project_id, rt.repo_path, task, branch, f"Failed to start {phase} agent: {exc}")

    def _phase_done_callback(self, rt: ProjectRuntime, phase: str, task: TrackerTask, branch: str) -> ExitCallback:
        async def on_done(code: int | None) -> None:
            with task_log_context(rt.project_id, task.id):
                if phase == "review":
                    await self.handle_review_done(rt.project_id, rt.repo_path, task, branch, code)
                else:
                    await self.handle_coding_done(rt.project_id, rt.repo_path, task, branch, code)

        return on_done

    def _agent_config_for(self, rt: ProjectRuntime, step: WorkflowStep, settings: ProjectSettings) -> AgentConfig:
        base = settings.reviewer if step.agent_role == "reviewer" else settings.coder
        attempt = max(rt.attempt, rt.step_attempts.get(step.id, 1))
        if (
            step.retry_policy.escalate_model
            and settings.escalation_model
            and attempt > step.retry_policy.max_attempts // 2
        ):
            logger.info(
                "Escalating %s for %s to %s (attempt %d)", step.id, rt.project_id, settings.escalation_model, attempt
            )
            return AgentConfig(type=base.type, model=settings.escalation_model, cli_command=base.cli_command)
        return base

    async def _execute_merge_step(self, rt: ProjectRuntime, step: WorkflowStep, settings: ProjectSettings) -> None:
        assert rt.current_task is not None and rt.execution is not None
        task = rt.current_task
        branch = rt.branch_name or ""
        rt.status.current_phase = "merge"
        self._persist(rt)
        try:
            await self._branch_manager.merge_to_main(rt.repo_path, branch)
        except Exception as exc:
            await self.fail_task(rt.project_id, rt.repo_path, task, branch, f"Merge failed: {exc}")
            return
        if settings.push_after_merge:
            try:
                await self._branch_manager.push_main(rt.repo_path)
            except Exception as exc:
                logger.warning("Push after merging %s failed: %s", task.id, exc)
        self._engine.mark_step(rt.execution, step.id, "completed")
        await self._advance(rt)

    # ------------------------------------------------------------------
    # Phase completion (also called by crash recovery)
    # ------------------------------------------------------------------

    async def handle_coding_done(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        branch_name: str,
        exit_code: int | None,
    ) -> None:
        rt = self.runtime(project_id)
        self._adopt(rt, task, branch_name, "coding")
        self._active_agents.unregister(task.id)
        assert rt.execution is not None
        wt = rt.base_path
        step_id = rt.execution.current_step_id
        try:
            if rt.run_state.killed_due_to_timeout:
                minutes = self._timing.inactivity_timeout_seconds / 60
                await self.fail_task(
                    project_id, repo_path, task, branch_name,
                    f"Agent timed out (no output for {minutes:.0f} minutes)",
                    session_status="timeout",
                )
                return
            result = self._sessions.read_result(wt, task.id)
            if not result or result.get("status") != "success":
                summary = (result or {}).get("summary")
                reason = summary or f"Coding agent exited with code {exit_code} without reporting success"
                await self.fail_task(project_id, repo_path, task, branch_name, str(reason))
                return

            try:
                await self._branch_manager.commit_wip(wt, task.id)
            except Exception as exc:
                logger.warning("WIP commit failed for %s: %s", task.id, exc)
            if await self._branch_manager.get_commit_count_ahead(repo_path, branch_name) <= 0:
                await self.fail_task(
                    project_id, repo_path, task, branch_name, "Agent reported success but made no commits"
                )
                return
            changed = await self._branch_manager.get_changed_files(repo_path, branch_name)
            tests = await self._test_runner.run_scoped_tests(wt, changed)
            if not tests.ok:
                await self.fail_task(
                    project_id, repo_path, task, branch_name,
                    f"Tests failed: {tests.failed} failed, {tests.passed} passed",
                    test_results=tests,
                )
                return

            await self._archive_attempt(rt, task, "success", test_results=tests, summary=result.get("summary"))
            if step_id:
                self._engine.mark_step(rt.execution, step_id, "completed")
            rt.feedback = None
            await self._advance(rt)
        except Exception as exc:
            logger.exception("Handling coding result for %s failed", task.id)
            await self.fail_task(project_id, repo_path, task, branch_name, f"Internal error after coding: {exc}")

    async def handle_review_done(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        branch_name: str,
        exit_code: int | None,
    ) -> None:
        rt = self.runtime(project_id)
        self._adopt(rt, task, branch_name, "review")
        self._active_agents.unregister(task.id)
        assert rt.workflow is not None and rt.execution is not None
        step_id = rt.execution.current_step_id
        result = self._sessions.read_result(rt.base_path, task.id)
        status = (result or {}).get("status")
        try:
            if status == "approved":
                await self._archive_attempt(rt, task, "approved", summary=(result or {}).get("notes"))
                if step_id:
                    self._engine.mark_step(rt.execution, step_id, "completed")
                rt.feedback = None
                await self._advance(rt)
                return

            if status == "rejected" and step_id:
                notes = str((result or {}).get("notes") or "No reviewer notes")
                await self._archive_attempt(rt, task, "rejected", failure_reason=notes)
                step = rt.workflow.step(step_id)
                limit = step.retry_policy.max_attempts if step else DEFAULT_RETRY_LIMIT
                if rt.step_attempts.get(step_id, 1) >= limit:
                    await self.fail_task(
                        project_id, repo_path, task, branch_name,
                        f"Review rejected {rt.step_attempts.get(step_id, 1)} times: {notes}",
                        archive=False,
                    )
                    return
                try:
                    await self._tracker.comment(repo_path, task.id, f"Review rejected: {notes}")
                except Exception as exc:
                    logger.debug("Could not comment on %s: %s", task.id, exc)
                # Re-run the review's dependencies, then the review itself.
                to_reset = [step_id, *(step.depends_on if step else [])]
                self._engine.reset_steps(rt.execution, to_reset)
                rt.feedback = f"Review feedback: {notes}"
                await self._advance(rt)
                return

            reason = f"Review agent exited with code {exit_code} without a verdict"
            if rt.run_state.killed_due_to_timeout:
                reason = "Review agent timed out"
            await self.fail_task(project_id, repo_path, task, branch_name, reason)
        except Exception as exc:
            logger.exception("Handling review result for %s failed", task.id)
            await self.fail_task(project_id, repo_path, task, branch_name, f"Internal error after review: {exc}")

    async def advance_past_coding(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        persisted: PersistedOrchestratorState,
    ) -> None:
        rt = self.runtime(project_id)
        self._restore_from_persisted(rt, task, persisted)
        assert rt.execution is not None
        if rt.execution.current_step_id:
            self._engine.mark_step(rt.execution, rt.execution.current_step_id, "completed")
        await self._archive_attempt(rt, task, "success", summary="Completed while the backend was down")
        self._persist(rt)
        await self._advance(rt)

    def reattach(self, project_id: str, repo_path: Path, persisted: PersistedOrchestratorState) -> None:
        rt = self.runtime(project_id)
        task = TrackerTask(id=persisted.current_task_id or "", title=persisted.current_task_title or "")
        self._restore_from_persisted(rt, task, persisted)

    async def fail_task(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        branch_name: str,
        reason: str,
        *,
        session_status: SessionStatus = "failed",
        test_results: TestResults | None = None,
        archive: bool = True,
    ) -> None:
        """End the current attempt: requeue the task, or block it once its attempts run out."""
        rt = self.runtime(project_id)
        self._adopt(rt, task, branch_name, None)
        self._active_agents.unregister(task.id)
        logger.warning("Task %s attempt %d failed: %s", task.id, rt.attempt, reason)

        limit = DEFAULT_RETRY_LIMIT
        if rt.workflow is not None and rt.execution is not None and rt.execution.current_step_id:
            self._engine.mark_step(rt.execution, rt.execution.current_step_id, "failed")
            step = rt.workflow.step(rt.execution.current_step_id)
            if step is not None:
                limit = step.retry_policy.max_attempts

        wt = rt.worktree_path
        if wt is not None:
            try:
                await self._branch_manager.commit_wip(wt, task.id)
            except Exception as exc:
                logger.debug("WIP commit failed for %s: %s", task.id, exc)
        if archive:
            await self._archive_attempt(
                rt, task, session_status, failure_reason=reason, test_results=test_results, with_diff=True
            )

        commits = 0
        if branch_name:
            try:
                commits = await self._branch_manager.get_commit_count_ahead(repo_path, branch_name)
            except Exception as exc:
                logger.debug("Could not count commits on %s: %s", branch_name, exc)
        try:
            await self._branch_manager.remove_task_worktree(repo_path, task.id, wt)
        except Exception as exc:
            logger.warning("Could not remove worktree for %s: %s", task.id, exc)

        if rt.attempt >= limit:
            new_status = "blocked"
            comment = f"Blocked after {rt.attempt} attempts: {reason}"
            rt.status.total_failed += 1
        else:
            new_status = "open"
            if commits == 0 and branch_name:
                try:
                    await self._branch_manager.delete_branch(repo_path, branch_name)
                except Exception as exc:
                    logger.debug("Could not delete branch %s: %s", branch_name, exc)
            comment = f"Attempt {rt.attempt} failed: {reason}. Task requeued."

        try:
            await self._tracker.update(repo_path, task.id, status=new_status, assignee="")
        except Exception:
            logger.exception("Could not update task %s to %s", task.id, new_status)
        try:
            await self._tracker.comment(repo_path, task.id, comment)
        except Exception as exc:
            logger.debug("Could not comment on %s: %s", task.id, exc)
        self._emit(rt, "task.updated", task.id, {"status": new_status, "assignee": None, "reason": reason})
        self._release_slot(rt)
        self.nudge(project_id)

    async def _complete_task(self, rt: ProjectRuntime) -> None:
        assert rt.current_task is not None
        task = rt.current_task
        branch = rt.branch_name or ""
        await self._tracker.close(rt.repo_path, task.id, "Completed all workflow steps")
        try:
            await self._branch_manager.remove_task_worktree(rt.repo_path, task.id, rt.worktree_path)
        except Exception as exc:
            logger.warning("Could not remove worktree for %s: %s", task.id, exc)
        if branch:
            try:
                await self._branch_manager.delete_branch(rt.repo_path, branch)
            except Exception as exc:
                logger.debug("Could not delete merged branch %s: %s", branch, exc)
        rt.status.total_completed += 1
        logger.info("Task %s completed", task.id)
        self._emit(rt, "task.updated", task.id, {"status": "closed", "assignee": None})
        self._release_slot(rt)
        self.nudge(rt.project_id)

    # ------------------------------------------------------------------
    # Re-attach
    # ------------------------------------------------------------------

    async def _resume_orphaned_agent(self, rt: ProjectRuntime) -> None:
        """Pick monitoring back up for an agent that outlived its state file."""
        orphans = find_orphaned_assignments(rt.repo_path)
        orphans += find_orphaned_assignments_from_worktrees(self._branch_manager.worktree_base)
        for orphan in orphans:
            assignment = orphan.assignment
            if assignment.project_id and assignment.project_id != rt.project_id:
                continue
            record = self._heartbeats.read(orphan.base_path, orphan.task_id)
            if record is None or not self._pid_alive(record.pid):
                continue
            try:
                task = await self._tracker.show(rt.repo_path, orphan.task_id)
            except Exception as exc:
                logger.warning("Orphaned agent for unknown task %s: %s", orphan.task_id, exc)
                continue
            persisted = PersistedOrchestratorState(
                project_id=rt.project_id,
                current_task_id=task.id,
                current_task_title=task.title,
                current_phase=assignment.phase,
                branch_name=assignment.branch_name,
                worktree_path=assignment.worktree_path or None,
                agent_pid=record.pid,
                attempt=assignment.attempt,
                started_at=assignment.created_at,
                last_output_timestamp=record.last_output_timestamp,
            )
            self._restore_from_persisted(rt, task, persisted)
            label = f"{assignment.agent_config.type} (resumed)"
            self._active_agents.register(
                task.id, rt.project_id, assignment.phase, label, branch_name=assignment.branch_name
            )
            params = AgentRunParams(
                project_id=rt.project_id,
                task_id=task.id,
                phase=assignment.phase,
                worktree_path=rt.base_path,
                branch_name=assignment.branch_name,
                prompt_path=Path(assignment.prompt_path),
                agent_config=assignment.agent_config,
                agent_label=label,
                role="reviewer" if assignment.phase == "review" else "coder",
                on_done=self._phase_done_callback(rt, assignment.phase, task, assignment.branch_name),
                attempt=assignment.attempt,
            )
            self._lifecycle.resume_monitoring(
                PidAgentHandle(record.pid, self._timing.kill_grace_seconds), params, rt.run_state, rt.timers,
                last_output_time=record.last_output_timestamp,
            )
            self._persist(rt)
            logger.info("Resumed orphaned agent for %s (pid=%s)", task.id, record.pid)
            return

    def _restore_from_persisted(
        self, rt: ProjectRuntime, task: TrackerTask, persisted: PersistedOrchestratorState
    ) -> None:
        rt.current_task = task
        rt.branch_name = persisted.branch_name
        rt.worktree_path = Path(persisted.worktree_path) if persisted.worktree_path else None
        rt.attempt = persisted.attempt
        rt.run_state = AgentRunState(started_at=persisted.started_at)
        rt.step_attempts = {}
        rt.feedback = None
        self._restore_execution(rt, task.id, persisted.current_phase or "coding")

    def _restore_execution(self, rt: ProjectRuntime, task_id: str, phase: str) -> None:
        try:
            workflow = load_workflow(rt.repo_path, self._engine)
        except WorkflowValidationError as exc:
            logger.error("Invalid workflow while recovering %s, using default: %s", task_id, exc)
            workflow = DEFAULT_WORKFLOW
        execution = self._engine.init_execution_state(workflow, task_id)
        target = next((s for s in workflow.steps if PHASE_BY_ROLE[s.agent_role] == phase), None)
        if target is not None:
            by_id = {s.id: s for s in workflow.steps}
            pending = list(target.depends_on)
            while pending:
                dep = pending.pop()
                if execution.step_states.get(dep) != "completed":
                    execution.step_states[dep] = "completed"
                    pending.extend(by_id[dep].depends_on)
            self._engine.mark_step(execution, target.id, "in_progress")
            rt.step_attempts[target.id] = 1
        rt.workflow = workflow
        rt.execution = execution
        rt.status.current_task_id = task_id
        rt.status.current_phase = phase

    def _adopt(self, rt: ProjectRuntime, task: TrackerTask, branch_name: str, phase: str | None) -> None:
        """Make *task* the slotted task when a callback arrives for one we lost track of."""
        if rt.current_task is not None and rt.current_task.id == task.id:
            rt.current_task = task
            return
        rt.current_task = task
        rt.branch_name = branch_name
        wt = self._branch_manager.get_worktree_path(task.id)
        rt.worktree_path = wt if wt.exists() else None
        rt.run_state = AgentRunState()
        rt.step_attempts = {}
        self._restore_execution(rt, task.id, phase or "coding")

    def _release_slot(self, rt: ProjectRuntime) -> None:
        rt.current_task = None
        rt.branch_name = None
        rt.worktree_path = None
        rt.workflow = None
        rt.execution = None
        rt.feedback = None
        rt.status.current_task_id = None
        rt.status.current_phase = None
        self._state_store.clear(rt.repo_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _archive_attempt(
        self,
        rt: ProjectRuntime,
        task: TrackerTask,
        status: SessionStatus,
        *,
        failure_reason: str | None = None,
        test_results: TestResults | None = None,
        summary: str | None = None,
        with_diff: bool = False,
    ) -> None:
        if self._archive is None:
            return
        settings = self._settings.get_settings(rt.project_id)
        agent = settings.reviewer if rt.status.current_phase == "review" else settings.coder
        diff = ""
        if rt.branch_name and (with_diff or status in ("success", "approved")):
            try:
                diff = await self._branch_manager.capture_branch_diff(rt.repo_path, rt.branch_name)
            except Exception as exc:
                logger.debug("Could not capture diff for %s: %s", rt.branch_name, exc)
        try:
            session = self._archive.create_session(
                task_id=task.id,
                attempt=rt.attempt,
                agent_type=agent.type,
                agent_model=agent.model,
                started_at=rt.run_state.started_at or self._clock(),
                status=status,
                output_log=rt.run_state.output_text(),
                git_branch=rt.branch_name or "",
                git_diff=diff,
                test_results=test_results,
                failure_reason=failure_reason,
                summary=str(summary) if summary is not None else None,
                completed_at=self._clock(),
            )
            await self._archive.archive_session(
                rt.repo_path, task.id, rt.attempt, session,
                worktree_path=rt.worktree_path, project_id=rt.project_id,
            )
        except Exception as exc:
            logger.warning("Could not archive session for %s: %s", task.id, exc)

    def _persist(self, rt: ProjectRuntime) -> None:
        proc = rt.run_state.active_process
        state = PersistedOrchestratorState(
            project_id=rt.project_id,
            current_task_id=rt.current_task.id if rt.current_task else None,
            current_task_title=rt.current_task.title if rt.current_task else None,
            current_phase=rt.status.current_phase,  # type: ignore[arg-type]
            branch_name=rt.branch_name,
            worktree_path=str(rt.worktree_path) if rt.worktree_path else None,
            agent_pid=proc.pid if proc is not None else None,
            attempt=rt.attempt,
            started_at=rt.run_state.started_at,
            last_transition=self._clock(),
            last_output_timestamp=rt.run_state.last_output_time or None,
            queue_depth=rt.status.queue_depth,
            total_completed=rt.status.total_completed,
            total_failed=rt.status.total_failed,
        )
        try:
            self._state_store.save(rt.repo_path, state)
        except OSError as exc:
            logger.warning("Could not persist orchestrator state for %s: %s", rt.project_id, exc)

    def _emit(self, rt: ProjectRuntime, event_type: str, task_id: str, payload: dict) -> None:
        self._notifier.emit(
            OrchestratorEvent(type=event_type, project_id=rt.project_id, task_id=task_id, payload=payload)
        )
