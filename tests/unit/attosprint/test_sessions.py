"""Tests for the session archive, output truncation and retention."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from attosprint.archive.retention import RETENTION_TIMER, SessionRetentionService
from attosprint.archive.sessions import SessionArchive, SessionManager
from attosprint.archive.truncation import (
    DEFAULT_THRESHOLD,
    MIN_THRESHOLD,
    TRUNCATION_SUFFIX,
    percentile_threshold,
    truncate_to_threshold,
)
from attosprint.coordinator.timer_registry import TimerRegistry
from attosprint.protocol.models import AgentSession, SprintPaths, TaskAssignment, TestResults, active_dir


@pytest_asyncio.fixture
async def archive(tmp_path: Path) -> AsyncIterator[SessionArchive]:
    a = SessionArchive(tmp_path / "db" / "sessions.db")
    await a.initialize()
    yield a
    await a.close()


def _session(task_id: str = "t1", attempt: int = 1, **overrides: object) -> AgentSession:
    fields: dict[str, object] = {
        "task_id": task_id,
        "attempt": attempt,
        "agent_type": "claude",
        "agent_model": "",
        "started_at": 100.0,
        "status": "success",
        "completed_at": 160.0,
    }
    fields.update(overrides)
    return SessionArchive.create_session(**fields)  # type: ignore[arg-type]


# ── truncation ────────────────────────────────────────────────────────


class TestTruncation:
    def test_empty_history_uses_default(self) -> None:
        assert percentile_threshold([]) == DEFAULT_THRESHOLD

    def test_p95_of_sizes(self) -> None:
        sizes = [2000] * 19 + [50_000]
        assert percentile_threshold(sizes) == 2000
        assert percentile_threshold(list(range(1, 101)), percentile=0.95) == MIN_THRESHOLD
        assert percentile_threshold([5000 + i for i in range(100)]) == 5094

    def test_threshold_has_a_floor(self) -> None:
        assert percentile_threshold([10, 20, 30]) == MIN_THRESHOLD

    def test_truncate(self) -> None:
        assert truncate_to_threshold("short", 10) == "short"
        assert truncate_to_threshold("x" * 20, 10) == "x" * 10 + TRUNCATION_SUFFIX


# ── SessionManager ────────────────────────────────────────────────────


class TestSessionManager:
    def test_prompt_assignment_and_result(self, repo: Path) -> None:
        sm = SessionManager()
        prompt = sm.write_prompt(repo, "t1", "do the thing")
        assert prompt == active_dir(repo, "t1") / SprintPaths.PROMPT
        assert prompt.read_text(encoding="utf-8") == "do the thing"

        assignment = TaskAssignment(
            task_id="t1", project_id="p1", phase="coding", branch_name="b", worktree_path="", prompt_path=str(prompt)
        )
        path = sm.write_assignment(repo, assignment)
        assert TaskAssignment.from_dict(json.loads(path.read_text(encoding="utf-8"))) == assignment

        assert sm.read_result(repo, "t1") is None
        (active_dir(repo, "t1") / SprintPaths.RESULT).write_text('{"approved": true}', encoding="utf-8")
        assert sm.read_result(repo, "t1") == {"approved": True}
        sm.clear_result(repo, "t1")
        assert sm.read_result(repo, "t1") is None


# ── SessionArchive ────────────────────────────────────────────────────


class TestSessionArchive:
    @pytest.mark.asyncio
    async def test_requires_initialize(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError, match="not initialized"):
            await SessionArchive(tmp_path / "s.db").count()

    @pytest.mark.asyncio
    async def test_archive_and_read_back(self, archive: SessionArchive, repo: Path) -> None:
        session = _session(
            status="failed",
            output_log="building...\n",
            git_branch="attosprint/t1",
            git_diff="+x\n",
            test_results=TestResults(passed=3, failed=1, total=4, raw_output="noise"),
            failure_reason="Tests failed: 1 failed, 3 passed",
        )
        row_id = await archive.archive_session(repo, "t1", 1, session, project_id="p1")
        assert row_id > 0

        stored = await archive.read_session("t1", 1)
        assert stored is not None
        assert stored.status == "failed"
        assert stored.output_log == "building...\n"
        assert stored.git_diff == "+x\n"
        assert stored.test_results == {"passed": 3, "failed": 1, "skipped": 0, "total": 4}
        assert stored.failure_reason == "Tests failed: 1 failed, 3 passed"
        assert await archive.read_session("t1", 2) is None

    @pytest.mark.asyncio
    async def test_active_dir_is_moved_into_sessions(self, archive: SessionArchive, repo: Path) -> None:
        sm = SessionManager()
        sm.write_prompt(repo, "t1", "prompt text")
        sm.output_log_path(repo, "t1").write_text("agent said hi\n", encoding="utf-8")
        (active_dir(repo, "t1") / SprintPaths.HEARTBEAT).write_text("{}", encoding="utf-8")
        (active_dir(repo, "t1") / SprintPaths.ASSIGNMENT).write_text("{}", encoding="utf-8")

        await archive.archive_session(repo, "t1", 2, _session(attempt=2))

        dest = repo / SprintPaths.SESSIONS / "t1-2"
        assert sorted(p.name for p in dest.iterdir()) == [SprintPaths.OUTPUT_LOG, SprintPaths.PROMPT]
        assert (dest / SprintPaths.OUTPUT_LOG).read_text(encoding="utf-8") == "agent said hi\n"
        assert not active_dir(repo, "t1").exists()

    @pytest.mark.asyncio
    async def test_worktree_active_dir_is_archived_into_repo(
        self, archive: SessionArchive, repo: Path, tmp_path: Path
    ) -> None:
        worktree = tmp_path / "worktrees" / "t1"
        SessionManager().write_prompt(worktree, "t1", "in the worktree")
        SessionManager().write_prompt(repo, "t1", "stale copy")

        await archive.archive_session(repo, "t1", 1, _session(), worktree_path=worktree)

        dest = repo / SprintPaths.SESSIONS / "t1-1" / SprintPaths.PROMPT
        assert dest.read_text(encoding="utf-8") == "in the worktree"
        assert not active_dir(worktree, "t1").exists()
        assert not active_dir(repo, "t1").exists()

    @pytest.mark.asyncio
    async def test_large_output_is_truncated_to_p95(self, archive: SessionArchive, repo: Path) -> None:
        for attempt in range(1, 21):
            await archive.archive_session(
                repo, "t0", attempt, _session("t0", attempt, output_log="a" * 2000, git_diff="d" * 2000)
            )

        await archive.archive_session(repo, "t1", 1, _session(output_log="b" * 5000, git_diff="small"))

        stored = await archive.read_session("t1", 1)
        assert stored is not None
        assert stored.output_log == "b" * 2000 + TRUNCATION_SUFFIX
        assert stored.git_diff == "small"

    @pytest.mark.asyncio
    async def test_empty_logs_and_diffs_do_not_lower_the_threshold(
        self, archive: SessionArchive, repo: Path
    ) -> None:
        for attempt in range(1, 11):
            await archive.archive_session(repo, "t0", attempt, _session("t0", attempt, status="failed"))
        await archive.archive_session(repo, "t1", 1, _session("t1", 1, output_log="a" * 5000))
        assert await archive.truncation_threshold() == 5000

        await archive.archive_session(repo, "t2", 1, _session("t2", 1, output_log="c" * 3000))

        stored = await archive.read_session("t2", 1)
        assert stored is not None
        assert stored.output_log == "c" * 3000

    @pytest.mark.asyncio
    async def test_listing_and_grouping(self, archive: SessionArchive, repo: Path) -> None:
        await archive.archive_session(repo, "t1", 1, _session("t1", 1, status="failed"), project_id="p1")
        await archive.archive_session(repo, "t2", 1, _session("t2", 1), project_id="p2")
        await archive.archive_session(repo, "t1", 2, _session("t1", 2), project_id="p1")

        assert [s.attempt for s in await archive.list_sessions("t1")] == [1, 2]
        grouped = await archive.load_sessions_grouped_by_task()
        assert sorted(grouped) == ["t1", "t2"]
        assert [s.status for s in grouped["t1"]] == ["failed", "success"]
        assert list(await archive.load_sessions_grouped_by_task("p2")) == ["t2"]
        assert await archive.count() == 3

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self, archive: SessionArchive, repo: Path) -> None:
        for attempt in range(1, 6):
            await archive.archive_session(repo, "t1", attempt, _session(attempt=attempt))

        assert await archive.prune(2) == 3
        assert [s.attempt for s in await archive.list_sessions("t1")] == [4, 5]
        assert await archive.prune(2) == 0


# ── SessionRetentionService ───────────────────────────────────────────


class TestRetention:
    @pytest.mark.asyncio
    async def test_run_once_prunes(self, archive: SessionArchive, repo: Path) -> None:
        for attempt in range(1, 4):
            await archive.archive_session(repo, "t1", attempt, _session(attempt=attempt))
        service = SessionRetentionService(archive, keep=1, timers=TimerRegistry())
        assert await service.run_once() == 2
        assert await archive.count() == 1

    @pytest.mark.asyncio
    async def test_prune_failure_is_contained(self) -> None:
        broken = AsyncMock()
        broken.prune = AsyncMock(side_effect=RuntimeError("disk full"))
        service = SessionRetentionService(broken, timers=TimerRegistry())
        assert await service.run_once() == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self) -> None:
        timers = TimerRegistry()
        archive = AsyncMock()
        archive.prune = AsyncMock(return_value=0)
        service = SessionRetentionService(archive, interval_seconds=3600, timers=timers)

        service.start()
        service.start()
        assert service.running
        assert timers.has(RETENTION_TIMER)

        service.stop()
        assert not service.running
        timers.clear_all()
