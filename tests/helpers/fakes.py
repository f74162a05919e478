"""In-memory collaborators for coordinator tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from attosprint.config.schema import AgentConfig
from attosprint.protocol.contracts import SpawnOptions
from attosprint.protocol.models import (
    HeartbeatRecord,
    OrchestratorEvent,
    PersistedOrchestratorState,
    TestResults,
    TrackerTask,
)
from attosprint.workspace.heartbeat import StaleHeartbeat


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAgentHandle:
    def __init__(self, pid: int, options: SpawnOptions | None = None) -> None:
        self._pid = pid
        self.options = options
        self.kill_count = 0

    @property
    def pid(self) -> int | None:
        return self._pid

    def kill(self) -> None:
        self.kill_count += 1

    def emit(self, chunk: str) -> None:
        assert self.options is not None
        self.options.on_output(chunk)

    async def exit(self, code: int | None = 0) -> None:
        assert self.options is not None
        await self.options.on_exit(code)


@dataclass
class SpawnCall:
    kind: str
    prompt_path: Path
    config: AgentConfig
    options: SpawnOptions
    handle: FakeAgentHandle


class FakeSpawner:
    def __init__(self, first_pid: int = 4242) -> None:
        self.calls: list[SpawnCall] = []
        self.next_pid = first_pid
        self.fail_with: Exception | None = None

    async def invoke_coding_agent(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> FakeAgentHandle:
        return self._spawn("coding", prompt_path, config, options)

    async def invoke_review_agent(
        self, prompt_path: Path, config: AgentConfig, options: SpawnOptions
    ) -> FakeAgentHandle:
        return self._spawn("review", prompt_path, config, options)

    def _spawn(self, kind: str, prompt_path: Path, config: AgentConfig, options: SpawnOptions) -> FakeAgentHandle:
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeAgentHandle(self.next_pid, options)
        self.next_pid += 1
        self.calls.append(SpawnCall(kind, prompt_path, config, options, handle))
        return handle

    @property
    def last(self) -> FakeAgentHandle:
        return self.calls[-1].handle


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[OrchestratorEvent] = []

    def emit(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[OrchestratorEvent]:
        return [e for e in self.events if e.type == event_type]


class FakeHeartbeats:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], HeartbeatRecord] = {}
        self.deleted: list[tuple[str, str]] = []
        self.fail_writes = False

    def write(self, base_path: Path, task_id: str, record: HeartbeatRecord) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.records[(str(base_path), task_id)] = record

    def read(self, base_path: Path, task_id: str) -> HeartbeatRecord | None:
        return self.records.get((str(base_path), task_id))

    def delete(self, base_path: Path, task_id: str) -> None:
        self.deleted.append((str(base_path), task_id))
        self.records.pop((str(base_path), task_id), None)

    def find_stale(self, base_path: Path, stale_after_seconds: float, now: float | None = None) -> list[StaleHeartbeat]:
        now = now or 0.0
        return [
            StaleHeartbeat(task_id=tid, base_path=Path(base), record=rec, age_seconds=now - rec.heartbeat_timestamp)
            for (base, tid), rec in self.records.items()
            if base == str(base_path) and now - rec.heartbeat_timestamp > stale_after_seconds
        ]


class FakeBranchManager:
    """Records every call; commit counts and failures are configurable per branch."""

    def __init__(self, worktree_base: Path) -> None:
        self._worktree_base = worktree_base
        self.calls: list[tuple[Any, ...]] = []
        self.commits_ahead: dict[str, int] = {}
        self.changed_files: list[str] = ["src/app.py", "tests/test_app.py"]
        self.merge_error: Exception | None = None
        self.commit_wip_error: Exception | None = None
        self.diff = "diff --git a/src/app.py b/src/app.py\n"

    @property
    def worktree_base(self) -> Path:
        return self._worktree_base

    def get_worktree_path(self, task_id: str) -> Path:
        return self._worktree_base / task_id

    async def create_task_worktree(self, repo_path: Path, task_id: str, branch_name: str) -> Path:
        self.calls.append(("create_task_worktree", repo_path, task_id, branch_name))
        path = self.get_worktree_path(task_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def remove_task_worktree(self, repo_path: Path, task_id: str, worktree_path: Path | None = None) -> None:
        self.calls.append(("remove_task_worktree", repo_path, task_id))

    async def delete_branch(self, repo_path: Path, branch_name: str) -> None:
        self.calls.append(("delete_branch", repo_path, branch_name))

    async def commit_wip(self, worktree_path: Path, task_id: str) -> bool:
        self.calls.append(("commit_wip", worktree_path, task_id))
        if self.commit_wip_error is not None:
            raise self.commit_wip_error
        return True

    async def get_commit_count_ahead(self, repo_path: Path, branch_name: str) -> int:
        return self.commits_ahead.get(branch_name, 0)

    async def capture_branch_diff(self, repo_path: Path, branch_name: str) -> str:
        return self.diff

    async def get_changed_files(self, repo_path: Path, branch_name: str) -> list[str]:
        return list(self.changed_files)

    async def merge_to_main(self, repo_path: Path, branch_name: str) -> None:
        self.calls.append(("merge_to_main", repo_path, branch_name))
        if self.merge_error is not None:
            raise self.merge_error

    async def push_main(self, repo_path: Path) -> None:
        self.calls.append(("push_main", repo_path))

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeTracker:
    def __init__(self, tasks: list[TrackerTask] | None = None) -> None:
        self.tasks: dict[str, TrackerTask] = {t.id: t for t in tasks or []}
        self.comments: list[tuple[str, str]] = []
        self.updates: list[tuple[str, str | None, str | None]] = []
        self.closed: list[tuple[str, str]] = []
        self.attempts: dict[str, int] = {}
        self.blocked: set[str] = set()

    async def ready(self, repo_path: Path) -> list[TrackerTask]:
        return [t for t in self.tasks.values() if t.status == "open"]

    async def show(self, repo_path: Path, task_id: str) -> TrackerTask:
        return self.tasks[task_id]

    async def update(
        self, repo_path: Path, task_id: str, *, status: str | None = None, assignee: str | None = None
    ) -> None:
        self.updates.append((task_id, status, assignee))
        task = self.tasks[task_id]
        if status is not None:
            task.status = status
        if assignee is not None:
            task.assignee = assignee

    async def close(self, repo_path: Path, task_id: str, reason: str) -> None:
        self.closed.append((task_id, reason))
        self.tasks[task_id].status = "closed"

    async def comment(self, repo_path: Path, task_id: str, text: str) -> None:
        self.comments.append((task_id, text))

    async def are_all_blockers_closed(self, repo_path: Path, task_id: str) -> bool:
        return task_id not in self.blocked

    async def get_cumulative_attempts(self, repo_path: Path, task_id: str) -> int:
        return self.attempts.get(task_id, 0)

    async def set_cumulative_attempts(self, repo_path: Path, task_id: str, attempts: int) -> None:
        self.attempts[task_id] = attempts

    async def list_in_progress_with_agent_assignee(self, repo_path: Path) -> list[TrackerTask]:
        return [t for t in self.tasks.values() if t.status == "in_progress" and t.assignee.startswith("agent:")]

    def comments_for(self, task_id: str) -> list[str]:
        return [text for tid, text in self.comments if tid == task_id]


class FakeTestRunner:
    __test__ = False

    def __init__(self, results: TestResults | None = None) -> None:
        self.results = results or TestResults(passed=3, failed=0, total=3, raw_output="3 passed")
        self.calls: list[tuple[Path, list[str]]] = []

    async def run_scoped_tests(self, cwd: Path, changed_files: list[str]) -> TestResults:
        self.calls.append((cwd, list(changed_files)))
        return self.results


@dataclass
class RecordingHost:
    """Phase host that only records what crash recovery asked of it."""

    calls: list[tuple[Any, ...]] = field(default_factory=list)
    slotted: list[str] = field(default_factory=list)
    active: list[str] = field(default_factory=list)

    async def handle_coding_done(self, project_id, repo_path, task, branch_name, exit_code) -> None:  # noqa: ANN001
        self.calls.append(("handle_coding_done", task.id, branch_name, exit_code))

    async def handle_review_done(self, project_id, repo_path, task, branch_name, exit_code) -> None:  # noqa: ANN001
        self.calls.append(("handle_review_done", task.id, branch_name, exit_code))

    async def fail_task(self, project_id, repo_path, task, branch_name, reason, **kwargs) -> None:  # noqa: ANN001, ANN003
        self.calls.append(("fail_task", task.id, branch_name, reason))

    async def advance_past_coding(self, project_id, repo_path, task, persisted) -> None:  # noqa: ANN001
        self.calls.append(("advance_past_coding", task.id, persisted.current_phase))

    def reattach(self, project_id: str, repo_path: Path, persisted: PersistedOrchestratorState) -> None:
        self.calls.append(("reattach", persisted.current_task_id))

    def get_slotted_task_ids(self, project_id: str) -> list[str]:
        return list(self.slotted)

    def get_active_agent_ids(self, project_id: str) -> list[str]:
        return list(self.active)

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]
