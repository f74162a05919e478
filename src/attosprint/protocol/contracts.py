"""Collaborator contracts consumed by the coordinator.

The coordinator only talks to the tracker, git, the test runner, agent
CLIs and UI consumers through these protocols; concrete implementations
live under ``attosprint.workspace`` and ``attosprint.adapters``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from attosprint.config.schema import AgentConfig
from attosprint.config.settings import ProjectSettings
from attosprint.protocol.models import (
    HeartbeatRecord,
    OrchestratorEvent,
    PersistedOrchestratorState,
    TestResults,
    TrackerTask,
)

if TYPE_CHECKING:
    from attosprint.workspace.heartbeat import StaleHeartbeat

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], Awaitable[None]]


class ProcessHandle(Protocol):
    """Capability over a running agent: its PID and a way to signal it."""

    @property
    def pid(self) -> int | None: ...

    def kill(self) -> None: ...


@dataclass(slots=True)
class SpawnOptions:
    cwd: Path
    agent_role: str
    output_log_path: Path
    on_output: OutputCallback
    on_exit: ExitCallback


class AgentSpawner(Protocol):
    async def invoke_coding_agent(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> ProcessHandle: ...

    async def invoke_review_agent(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> ProcessHandle: ...


class HeartbeatStorage(Protocol):
    def write(self, base_path: Path, task_id: str, record: HeartbeatRecord) -> None: ...

    def read(self, base_path: Path, task_id: str) -> HeartbeatRecord | None: ...

    def delete(self, base_path: Path, task_id: str) -> None: ...

    def find_stale(
        self, base_path: Path, stale_after_seconds: float, now: float | None = None
    ) -> list[StaleHeartbeat]: ...

class Notifier(Protocol):
    def emit(self, event: OrchestratorEvent) -> None: ...


class IssueTracker(Protocol):
    async def ready(self, repo_path: Path) -> list[TrackerTask]: ...

    async def show(self, repo_path: Path, task_id: str) -> TrackerTask: ...

    async def update(
        self,
        repo_path: Path,
        task_id: str,
        *,
        status: str | None = None,
        assignee: str | None = None,
    ) -> None: ...

    async def close(self, repo_path: Path, task_id: str, reason: str) -> None: ...

    async def comment(self, repo_path: Path, task_id: str, text: str) -> None: ...

    async def are_all_blockers_closed(self, repo_path: Path, task_id: str) -> bool: ...

    async def get_cumulative_attempts(self, repo_path: Path, task_id: str) -> int: ...

    async def set_cumulative_attempts(self, repo_path: Path, task_id: str, attempts: int) -> None: ...

    async def list_in_progress_with_agent_assignee(self, repo_path: Path) -> list[TrackerTask]: ...


class BranchManager(Protocol):
    @property
    def worktree_base(self) -> Path: ...

    def get_worktree_path(self, task_id: str) -> Path: ...

    async def create_task_worktree(self, repo_path: Path, task_id: str, branch_name: str) -> Path: ...

    async def remove_task_worktree(
        self, repo_path: Path, task_id: str, worktree_path: Path | None = None
    ) -> None: ...

    async def delete_branch(self, repo_path: Path, branch_name: str) -> None: ...

    async def commit_wip(self, worktree_path: Path, task_id: str) -> bool: ...

    async def get_commit_count_ahead(self, repo_path: Path, branch_name: str) -> int: ...

    async def capture_branch_diff(self, repo_path: Path, branch_name: str) -> str: ...

    async def get_changed_files(self, repo_path: Path, branch_name: str) -> list[str]: ...

    async def merge_to_main(self, repo_path: Path, branch_name: str) -> None: ...

    async def push_main(self, repo_path: Path) -> None: ...


class TestRunner(Protocol):
    __test__ = False

    async def run_scoped_tests(self, cwd: Path, changed_files: list[str]) -> TestResults: ...


class SettingsProvider(Protocol):
    def get_settings(self, project_id: str) -> ProjectSettings: ...


class RecoveryHost(Protocol):
    """What the watchdog's recovery pass needs from the driving loop."""

    def get_slotted_task_ids(self, project_id: str) -> list[str]: ...

    def get_active_agent_ids(self, project_id: str) -> list[str]: ...


class PhaseHost(Protocol):
    """Phase-completion handlers that crash recovery dispatches into."""

    async def handle_coding_done(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        branch_name: str,
        exit_code: int | None,
    ) -> None: ...

    async def handle_review_done(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        branch_name: str,
        exit_code: int | None,
    ) -> None: ...

    async def fail_task(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        branch_name: str,
        reason: str,
    ) -> None: ...

    async def advance_past_coding(
        self,
        project_id: str,
        repo_path: Path,
        task: TrackerTask,
        persisted: PersistedOrchestratorState,
    ) -> None: ...

    def reattach(self, project_id: str, repo_path: Path, persisted: PersistedOrchestratorState) -> None: ...
