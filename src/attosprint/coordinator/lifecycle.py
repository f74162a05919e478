"""Agent process lifecycle: spawn, stream, heartbeat, inactivity timeout.

Every attempt finishes exactly once.  Two paths can observe the end of
an agent (its own exit callback and the inactivity monitor noticing a
dead PID); both go through ``CompletionLatch.try_set()`` and only the
winner runs cleanup and ``on_done``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from attosprint.adapters.base import LogTail, is_pid_alive
from attosprint.config.schema import MAX_OUTPUT_LOG_BYTES, AgentConfig, TimingConfig
from attosprint.coordinator.timer_registry import TimerRegistry
from attosprint.protocol.contracts import (
    AgentSpawner,
    BranchManager,
    ExitCallback,
    HeartbeatStorage,
    Notifier,
    ProcessHandle,
    SpawnOptions,
)
from attosprint.protocol.models import HeartbeatRecord, OrchestratorEvent, SprintPaths, active_dir

logger = logging.getLogger(__name__)

HEARTBEAT_TIMER = "heartbeat"
INACTIVITY_TIMER = "inactivity"
OUTPUT_TAIL_TIMER = "output-tail"


class CompletionLatch:
    """Single-assignment flag; ``try_set()`` succeeds for exactly one caller."""

    __slots__ = ("_set",)

    def __init__(self) -> None:
        self._set = False

    def try_set(self) -> bool:
        if self._set:
            return False
        self._set = True
        return True

    @property
    def is_set(self) -> bool:
        return self._set


@dataclass(slots=True)
class AgentRunState:
    active_process: ProcessHandle | None = None
    last_output_time: float = 0.0
    output_log: list[str] = field(default_factory=list)
    output_log_bytes: int = 0
    started_at: float | None = None
    latch: CompletionLatch = field(default_factory=CompletionLatch)
    killed_due_to_timeout: bool = False
    output_tail_stop: Callable[[], None] | None = None

    @property
    def exit_handled(self) -> bool:
        return self.latch.is_set

    def reset_for_attempt(self, now: float) -> None:
        self.latch = CompletionLatch()
        self.killed_due_to_timeout = False
        self.output_log = []
        self.output_log_bytes = 0
        self.last_output_time = now
        if self.started_at is None:
            self.started_at = now

    def output_text(self) -> str:
        return "".join(self.output_log)


def append_output_log(state: AgentRunState, chunk: str, max_bytes: int = MAX_OUTPUT_LOG_BYTES) -> None:
    """Append *chunk*, evicting oldest chunks past *max_bytes*; the newest chunk always stays."""
    state.output_log.append(chunk)
    state.output_log_bytes += len(chunk.encode("utf-8"))
    while state.output_log_bytes > max_bytes and len(state.output_log) > 1:
        evicted = state.output_log.pop(0)
        state.output_log_bytes -= len(evicted.encode("utf-8"))


@dataclass(slots=True)
class AgentRunParams:
    project_id: str
    task_id: str
    phase: str
    worktree_path: Path
    branch_name: str
    prompt_path: Path
    agent_config: AgentConfig
    agent_label: str
    role: str                   # coder | reviewer
    on_done: ExitCallback
    attempt: int = 1

    @property
    def output_log_path(self) -> Path:
        return active_dir(self.worktree_path, self.task_id) / SprintPaths.OUTPUT_LOG


class AgentLifecycleManager:
    """Runs one agent attempt at a time per ``AgentRunState``."""

    def __init__(
        self,
        spawner: AgentSpawner,
        heartbeats: HeartbeatStorage,
        notifier: Notifier,
        branch_manager: BranchManager,
        *,
        timing: TimingConfig | None = None,
        max_output_log_bytes: int = MAX_OUTPUT_LOG_BYTES,
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int], bool] = is_pid_alive,
    ) -> None:
        self._spawner = spawner
        self._heartbeats = heartbeats
        self._notifier = notifier
        self._branch_manager = branch_manager
        self._timing = timing or TimingConfig()
        self._max_output_log_bytes = max_output_log_bytes
        self._clock = clock
        self._pid_alive = pid_alive

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    async def run(self, params: AgentRunParams, state: AgentRunState, timers: TimerRegistry) -> None:
        """Spawn the agent for *params* and start monitoring it.

        Returns once the process is launched; completion is reported
        through ``params.on_done``.  Spawn failures propagate.
        """
        now = self._clock()
        state.reset_for_attempt(now)
        state.active_process = None
        latch = state.latch
        self._notifier.emit(
            OrchestratorEvent(
                type="agent.started",
                project_id=params.project_id,
                task_id=params.task_id,
                payload={
                    "phase": params.phase,
                    "branch_name": params.branch_name,
                    "started_at": state.started_at,
                    "agent": params.agent_label,
                    "attempt": params.attempt,
                },
            )
        )

        async def on_exit(code: int | None) -> None:
            if not latch.try_set():
                return
            state.active_process = None
            self._stop_monitoring(timers)
            self._delete_heartbeat(params)
            self._emit_completed(params, state, code)
            try:
                await params.on_done(code)
            except Exception:
                logger.exception("on_done failed for task %s (%s)", params.task_id, params.phase)

        options = SpawnOptions(
            cwd=params.worktree_path,
            agent_role=params.role,
            output_log_path=params.output_log_path,
            on_output=lambda chunk: self._handle_output(params, state, chunk),
            on_exit=on_exit,
        )
        if params.role == "reviewer":
            handle = await self._spawner.invoke_review_agent(params.prompt_path, params.agent_config, options)
        else:
            handle = await self._spawner.invoke_coding_agent(params.prompt_path, params.agent_config, options)

        if latch.is_set:
            # Exited before we got the handle back; on_exit already finished the attempt.
            return
        state.active_process = handle
        logger.info("Agent %s started for task %s (pid=%s)", params.agent_label, params.task_id, handle.pid)
        self._start_monitoring(params, state, timers, params.on_done)

    def resume_monitoring(
        self,
        handle: ProcessHandle,
        params: AgentRunParams,
        state: AgentRunState,
        timers: TimerRegistry,
        last_output_time: float | None = None,
    ) -> Callable[[], None]:
        """Re-attach to an agent still running after a restart.

        New bytes appended to the agent's output log are streamed as if
        the process were ours.  The returned stop function cancels the
        tail timer synchronously, then drains what is left.
        """
        state.active_process = handle
        state.latch = CompletionLatch()
        state.killed_due_to_timeout = False
        state.last_output_time = last_output_time if last_output_time is not None else self._clock()
        if state.started_at is None:
            state.started_at = state.last_output_time

        tail = LogTail(params.output_log_path)

        def drain() -> None:
            text = tail.read_new()
            if text:
                self._handle_output(params, state, text)

        def stop() -> None:
            timers.clear(OUTPUT_TAIL_TIMER)
            state.output_tail_stop = None
            drain()

        async def on_done(code: int | None) -> None:
            stop()
            await params.on_done(code)

        timers.set_interval(OUTPUT_TAIL_TIMER, drain, self._timing.output_tail_poll_seconds)
        state.output_tail_stop = stop
        logger.info("Resumed monitoring of task %s (pid=%s)", params.task_id, handle.pid)
        self._start_monitoring(params, state, timers, on_done)
        return stop

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _start_monitoring(
        self,
        params: AgentRunParams,
        state: AgentRunState,
        timers: TimerRegistry,
        on_done: ExitCallback,
    ) -> None:
        self.write_heartbeat(params, state)
        timers.set_interval(
            HEARTBEAT_TIMER,
            lambda: self.write_heartbeat(params, state),
            self._timing.heartbeat_interval_seconds,
        )
        timers.set_interval(
            INACTIVITY_TIMER,
            lambda: self.check_inactivity(params, state, timers, on_done),
            self._timing.inactivity_check_seconds,
        )

    def _stop_monitoring(self, timers: TimerRegistry) -> None:
        timers.clear(HEARTBEAT_TIMER)
        timers.clear(INACTIVITY_TIMER)

    def write_heartbeat(self, params: AgentRunParams, state: AgentRunState) -> None:
        proc = state.active_process
        if proc is None or proc.pid is None:
            return
        record = HeartbeatRecord(
            pid=proc.pid,
            last_output_timestamp=state.last_output_time,
            heartbeat_timestamp=self._clock(),
        )
        try:
            self._heartbeats.write(params.worktree_path, params.task_id, record)
        except Exception as exc:
            logger.debug("Heartbeat write failed for %s: %s", params.task_id, exc)

    async def check_inactivity(
        self,
        params: AgentRunParams,
        state: AgentRunState,
        timers: TimerRegistry,
        on_done: ExitCallback,
    ) -> None:
        """One inactivity-monitor tick: detect a vanished PID or a silent agent."""
        if state.exit_handled:
            return
        proc = state.active_process
        if proc is None:
            return

        if proc.pid is not None and not self._pid_alive(proc.pid):
            if not state.latch.try_set():
                return
            logger.warning(
                "Agent for task %s (pid=%s) is gone without an exit event", params.task_id, proc.pid
            )
            state.active_process = None
            self._stop_monitoring(timers)
            self._delete_heartbeat(params)
            await self._commit_wip(params)
            self._emit_completed(params, state, None)
            try:
                await on_done(None)
            except Exception:
                logger.exception("on_done failed for task %s (%s)", params.task_id, params.phase)
            return

        if state.killed_due_to_timeout:
            # Already signalled; the handle escalates to SIGKILL on its own.
            return

        elapsed = self._clock() - state.last_output_time
        if elapsed > self._timing.inactivity_timeout_seconds:
            logger.warning(
                "Agent for task %s silent for %.0fs (limit %.0fs), killing",
                params.task_id,
                elapsed,
                self._timing.inactivity_timeout_seconds,
            )
            await self._commit_wip(params)
            state.killed_due_to_timeout = True
            proc.kill()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _handle_output(self, params: AgentRunParams, state: AgentRunState, chunk: str) -> None:
        append_output_log(state, chunk, self._max_output_log_bytes)
        state.last_output_time = self._clock()
        self._notifier.emit(
            OrchestratorEvent(
                type="agent.output",
                project_id=params.project_id,
                task_id=params.task_id,
                payload={"chunk": chunk},
            )
        )

    def _emit_completed(self, params: AgentRunParams, state: AgentRunState, code: int | None) -> None:
        self._notifier.emit(
            OrchestratorEvent(
                type="agent.completed",
                project_id=params.project_id,
                task_id=params.task_id,
                payload={
                    "phase": params.phase,
                    "exit_code": code,
                    "killed_due_to_timeout": state.killed_due_to_timeout,
                },
            )
        )

    def _delete_heartbeat(self, params: AgentRunParams) -> None:
        try:
            self._heartbeats.delete(params.worktree_path, params.task_id)
        except Exception as exc:
            logger.debug("Heartbeat delete failed for %s: %s", params.task_id, exc)

    async def _commit_wip(self, params: AgentRunParams) -> None:
        try:
            await self._branch_manager.commit_wip(params.worktree_path, params.task_id)
        except Exception as exc:
            logger.warning("WIP commit failed for task %s: %s", params.task_id, exc)
