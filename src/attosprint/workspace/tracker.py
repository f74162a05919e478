"""Task tracker backed by ``.attosprint/tasks.json`` in the repository.

Good enough for single-host use from the CLI; production deployments
plug their own tracker in through the ``IssueTracker`` contract.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any

from attosprint.errors import TaskNotFoundError
from attosprint.protocol.io import read_json, write_json_atomic
from attosprint.protocol.models import SprintPaths, TrackerTask

AGENT_ASSIGNEE_PREFIX = "agent:"


class JsonFileTracker:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    def path_for(self, repo_path: Path) -> Path:
        return Path(repo_path) / SprintPaths.TASKS

    async def ready(self, repo_path: Path) -> list[TrackerTask]:
        records = self._load(repo_path)
        tasks = [self._to_task(r) for r in records if r.get("status", "open") == "open"]
        return sorted(tasks, key=lambda t: t.priority)

    async def show(self, repo_path: Path, task_id: str) -> TrackerTask:
        return self._to_task(self._find(self._load(repo_path), task_id))

    async def update(
        self,
        repo_path: Path,
        task_id: str,
        *,
        status: str | None = None,
        assignee: str | None = None,
    ) -> None:
        async with self._lock:
            records = self._load(repo_path)
            record = self._find(records, task_id)
            if status is not None:
                record["status"] = status
            if assignee is not None:
                record["assignee"] = assignee
            self._save(repo_path, records)

    async def close(self, repo_path: Path, task_id: str, reason: str) -> None:
        async with self._lock:
            records = self._load(repo_path)
            record = self._find(records, task_id)
            record["status"] = "closed"
            record["assignee"] = ""
            record["close_reason"] = reason
            self._save(repo_path, records)

    async def comment(self, repo_path: Path, task_id: str, text: str) -> None:
        async with self._lock:
            records = self._load(repo_path)
            record = self._find(records, task_id)
            record.setdefault("comments", []).append({"text": text, "at": time.time()})
            self._save(repo_path, records)

    async def are_all_blockers_closed(self, repo_path: Path, task_id: str) -> bool:
        records = self._load(repo_path)
        record = self._find(records, task_id)
        by_id = {str(r.get("id")): r for r in records}
        for blocker in record.get("blocked_by", []):
            other = by_id.get(str(blocker))
            if other is not None and other.get("status") != "closed":
                return False
        return True

    async def get_cumulative_attempts(self, repo_path: Path, task_id: str) -> int:
        return int(self._find(self._load(repo_path), task_id).get("attempts", 0))

    async def set_cumulative_attempts(self, repo_path: Path, task_id: str, attempts: int) -> None:
        async with self._lock:
            records = self._load(repo_path)
            self._find(records, task_id)["attempts"] = attempts
            self._save(repo_path, records)

    async def list_in_progress_with_agent_assignee(self, repo_path: Path) -> list[TrackerTask]:
        return [
            self._to_task(r)
            for r in self._load(repo_path)
            if r.get("status") == "in_progress" and str(r.get("assignee", "")).startswith(AGENT_ASSIGNEE_PREFIX)
        ]

    async def list_all(self, repo_path: Path) -> list[TrackerTask]:
        return [self._to_task(r) for r in self._load(repo_path)]

    async def add(self, repo_path: Path, task: TrackerTask) -> None:
        async with self._lock:
            records = self._load(repo_path)
            records.append(task.to_dict())
            self._save(repo_path, records)

    def _load(self, repo_path: Path) -> list[dict[str, Any]]:
        raw = read_json(self.path_for(repo_path), default={"tasks": []})
        tasks = raw.get("tasks", []) if isinstance(raw, dict) else []
        return [t for t in tasks if isinstance(t, dict) and "id" in t]

    def _save(self, repo_path: Path, records: list[dict[str, Any]]) -> None:
        write_json_atomic(self.path_for(repo_path), {"tasks": records})

    @staticmethod
    def _find(records: list[dict[str, Any]], task_id: str) -> dict[str, Any]:
        for record in records:
            if str(record["id"]) == task_id:
                return record
        raise TaskNotFoundError(task_id)

    @staticmethod
    def _to_task(record: dict[str, Any]) -> TrackerTask:
        return TrackerTask(
            id=str(record["id"]),
            title=str(record.get("title", "")),
            description=str(record.get("description", "")),
            status=str(record.get("status", "open")),
            assignee=str(record.get("assignee", "")),
            priority=int(record.get("priority", 2)),
            labels=list(record.get("labels", [])),
            blocked_by=[str(b) for b in record.get("blocked_by", [])],
        )
