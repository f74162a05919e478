"""Tests for the tasks.json-backed tracker."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from attosprint.errors import ErrorCategory, TaskNotFoundError
from attosprint.protocol.models import SprintPaths, TrackerTask
from attosprint.workspace.tracker import JsonFileTracker


@pytest.fixture()
def tracker() -> JsonFileTracker:
    return JsonFileTracker()


async def _seed(tracker: JsonFileTracker, repo: Path) -> None:
    await tracker.add(repo, TrackerTask(id="low", title="Low priority", priority=3))
    await tracker.add(repo, TrackerTask(id="high", title="High priority", priority=0))
    await tracker.add(repo, TrackerTask(id="dep", title="Depends on high", blocked_by=["high"]))


class TestJsonFileTracker:
    @pytest.mark.asyncio
    async def test_empty_repo_has_no_tasks(self, tracker: JsonFileTracker, repo: Path) -> None:
        assert await tracker.ready(repo) == []
        assert await tracker.list_all(repo) == []

    @pytest.mark.asyncio
    async def test_add_writes_tasks_file(self, tracker: JsonFileTracker, repo: Path) -> None:
        await tracker.add(repo, TrackerTask(id="t1", title="First"))
        raw = json.loads((repo / SprintPaths.TASKS).read_text(encoding="utf-8"))
        assert raw["tasks"][0]["id"] == "t1"
        assert raw["tasks"][0]["status"] == "open"

    @pytest.mark.asyncio
    async def test_ready_is_open_tasks_by_priority(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        await tracker.update(repo, "dep", status="in_progress")
        assert [t.id for t in await tracker.ready(repo)] == ["high", "low"]

    @pytest.mark.asyncio
    async def test_show(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        task = await tracker.show(repo, "dep")
        assert task.title == "Depends on high"
        assert task.blocked_by == ["high"]

    @pytest.mark.asyncio
    async def test_unknown_task_raises(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        with pytest.raises(TaskNotFoundError) as info:
            await tracker.show(repo, "nope")
        assert info.value.task_id == "nope"
        assert info.value.category == ErrorCategory.TRACKER

    @pytest.mark.asyncio
    async def test_update_status_and_assignee(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        await tracker.update(repo, "low", status="in_progress", assignee="agent:p1")
        task = await tracker.show(repo, "low")
        assert (task.status, task.assignee) == ("in_progress", "agent:p1")

        await tracker.update(repo, "low", assignee="")
        task = await tracker.show(repo, "low")
        assert (task.status, task.assignee) == ("in_progress", "")

    @pytest.mark.asyncio
    async def test_close_records_reason(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        await tracker.update(repo, "high", status="in_progress", assignee="agent:p1")
        await tracker.close(repo, "high", "Completed all workflow steps")

        task = await tracker.show(repo, "high")
        assert (task.status, task.assignee) == ("closed", "")
        raw = json.loads((repo / SprintPaths.TASKS).read_text(encoding="utf-8"))
        record = next(r for r in raw["tasks"] if r["id"] == "high")
        assert record["close_reason"] == "Completed all workflow steps"

    @pytest.mark.asyncio
    async def test_comments_append(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        await tracker.comment(repo, "low", "first")
        await tracker.comment(repo, "low", "second")
        raw = json.loads((repo / SprintPaths.TASKS).read_text(encoding="utf-8"))
        record = next(r for r in raw["tasks"] if r["id"] == "low")
        assert [c["text"] for c in record["comments"]] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_blockers(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        assert await tracker.are_all_blockers_closed(repo, "low")
        assert not await tracker.are_all_blockers_closed(repo, "dep")
        await tracker.close(repo, "high", "done")
        assert await tracker.are_all_blockers_closed(repo, "dep")

    @pytest.mark.asyncio
    async def test_missing_blocker_does_not_block(self, tracker: JsonFileTracker, repo: Path) -> None:
        await tracker.add(repo, TrackerTask(id="t1", title="x", blocked_by=["deleted-long-ago"]))
        assert await tracker.are_all_blockers_closed(repo, "t1")

    @pytest.mark.asyncio
    async def test_cumulative_attempts(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        assert await tracker.get_cumulative_attempts(repo, "low") == 0
        await tracker.set_cumulative_attempts(repo, "low", 3)
        assert await tracker.get_cumulative_attempts(repo, "low") == 3

    @pytest.mark.asyncio
    async def test_in_progress_with_agent_assignee(self, tracker: JsonFileTracker, repo: Path) -> None:
        await _seed(tracker, repo)
        await tracker.update(repo, "low", status="in_progress", assignee="agent:p1")
        await tracker.update(repo, "high", status="in_progress", assignee="alice")
        found = await tracker.list_in_progress_with_agent_assignee(repo)
        assert [t.id for t in found] == ["low"]

    @pytest.mark.asyncio
    async def test_malformed_file_reads_as_empty(self, tracker: JsonFileTracker, repo: Path) -> None:
        path = repo / SprintPaths.TASKS
        path.parent.mkdir(parents=True)
        path.write_text('{"tasks": [{"title": "no id"}, "junk"]}', encoding="utf-8")
        assert await tracker.list_all(repo) == []
