"""Agent session archive.

``SessionManager`` owns the per-task active directory (assignment,
prompt, output log, result).  ``SessionArchive`` turns a finished
attempt into an immutable SQLite row plus a copy of its active
directory under ``.attosprint/sessions/<task_id>-<attempt>/``.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections import defaultdict
from pathlib import Path
from typing import Any

import aiosqlite

from attosprint.archive.truncation import percentile_threshold, truncate_to_threshold
from attosprint.protocol.io import read_json, unlink_quiet, write_json_atomic
from attosprint.protocol.models import (
    AgentSession,
    SessionStatus,
    SprintPaths,
    TaskAssignment,
    TestResults,
    active_dir,
)

logger = logging.getLogger(__name__)

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS agent_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL DEFAULT '',
    task_id TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    agent_type TEXT DEFAULT '',
    agent_model TEXT DEFAULT '',
    started_at REAL NOT NULL,
    completed_at REAL NOT NULL,
    status TEXT NOT NULL,
    output_log TEXT DEFAULT '',
    git_branch TEXT DEFAULT '',
    git_diff TEXT DEFAULT '',
    test_results TEXT,
    failure_reason TEXT,
    summary TEXT
);

CREATE INDEX IF NOT EXISTS idx_agent_sessions_task ON agent_sessions(task_id, attempt);
"""


class SessionManager:
    """Paths and small files inside ``.attosprint/active/<task_id>/``."""

    def get_active_dir(self, base_path: Path, task_id: str) -> Path:
        return active_dir(base_path, task_id)

    def output_log_path(self, base_path: Path, task_id: str) -> Path:
        return self.get_active_dir(base_path, task_id) / SprintPaths.OUTPUT_LOG

    def write_prompt(self, base_path: Path, task_id: str, prompt: str) -> Path:
        path = self.get_active_dir(base_path, task_id) / SprintPaths.PROMPT
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(prompt, encoding="utf-8")
        return path

    def write_assignment(self, base_path: Path, assignment: TaskAssignment) -> Path:
        path = self.get_active_dir(base_path, assignment.task_id) / SprintPaths.ASSIGNMENT
        write_json_atomic(path, assignment.to_dict())
        return path

    def read_result(self, base_path: Path, task_id: str) -> dict[str, Any] | None:
        raw = read_json(self.get_active_dir(base_path, task_id) / SprintPaths.RESULT, default=None)
        return raw if isinstance(raw, dict) else None

    def clear_result(self, base_path: Path, task_id: str) -> None:
        unlink_quiet(self.get_active_dir(base_path, task_id) / SprintPaths.RESULT)


class SessionArchive:
    """Async SQLite archive of finished agent attempts."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(CREATE_TABLES_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SessionArchive not initialized. Call initialize() first.")
        return self._db

    # --- Building and archiving ---

    @staticmethod
    def create_session(
        *,
        task_id: str,
        attempt: int,
        agent_type: str,
        agent_model: str,
        started_at: float,
        status: SessionStatus,
        output_log: str = "",
        git_branch: str = "",
        git_diff: str = "",
        test_results: TestResults | None = None,
        failure_reason: str | None = None,
        summary: str | None = None,
        completed_at: float | None = None,
    ) -> AgentSession:
        tests: dict[str, Any] | None = None
        if test_results is not None:
            tests = {
                "passed": test_results.passed,
                "failed": test_results.failed,
                "skipped": test_results.skipped,
                "total": test_results.total,
            }
        return AgentSession(
            task_id=task_id,
            attempt=attempt,
            agent_type=agent_type,
            agent_model=agent_model,
            started_at=started_at,
            completed_at=completed_at if completed_at is not None else time.time(),
            status=status,
            output_log=output_log,
            git_branch=git_branch,
            git_diff=git_diff,
            test_results=tests,
            failure_reason=failure_reason,
            summary=summary,
        )

    async def truncation_threshold(self) -> int:
        """95th percentile of archived output-log and diff sizes, ignoring empty ones."""
        db = self._ensure_db()
        sizes: list[int] = []
        async with db.execute(
            "SELECT length(output_log) AS log_len, length(git_diff) AS diff_len FROM agent_sessions"
        ) as cursor:
            async for row in cursor:
                sizes.extend(n for n in (row["log_len"], row["diff_len"]) if n)
        return percentile_threshold(sizes)

    async def archive_session(
        self,
        repo_path: Path,
        task_id: str,
        attempt: int,
        session: AgentSession,
        worktree_path: Path | None = None,
        project_id: str = "",
    ) -> int:
        """Store *session* and move the task's active directory into the archive.

        Returns the new row id.  File moves are best effort: the row is
        already committed when they run.
        """
        db = self._ensure_db()
        threshold = await self.truncation_threshold()
        cursor = await db.execute(
            """INSERT INTO agent_sessions
               (project_id, task_id, attempt, agent_type, agent_model, started_at, completed_at,
                status, output_log, git_branch, git_diff, test_results, failure_reason, summary)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                project_id,
                task_id,
                attempt,
                session.agent_type,
                session.agent_model,
                session.started_at,
                session.completed_at,
                session.status,
                truncate_to_threshold(session.output_log, threshold),
                session.git_branch,
                truncate_to_threshold(session.git_diff, threshold),
                json.dumps(session.test_results) if session.test_results is not None else None,
                session.failure_reason,
                session.summary,
            ),
        )
        await db.commit()
        row_id = int(cursor.lastrowid or 0)

        base = Path(worktree_path) if worktree_path else Path(repo_path)
        self._move_active_dir(Path(repo_path), base, task_id, attempt)
        return row_id

    def _move_active_dir(self, repo_path: Path, base: Path, task_id: str, attempt: int) -> None:
        source = active_dir(base, task_id)
        unlink_quiet(source / SprintPaths.HEARTBEAT)
        unlink_quiet(source / SprintPaths.ASSIGNMENT)
        if source.is_dir():
            dest = repo_path / SprintPaths.SESSIONS / f"{task_id}-{attempt}"
            try:
                dest.mkdir(parents=True, exist_ok=True)
                for entry in source.iterdir():
                    if entry.is_file() and entry.name != SprintPaths.HEARTBEAT:
                        shutil.copy2(entry, dest / entry.name)
            except OSError as exc:
                logger.warning("Failed to copy session files for %s-%s: %s", task_id, attempt, exc)
            shutil.rmtree(source, ignore_errors=True)
        if base.resolve() != repo_path.resolve():
            shutil.rmtree(active_dir(repo_path, task_id), ignore_errors=True)

    # --- Queries ---

    async def read_session(self, task_id: str, attempt: int) -> AgentSession | None:
        db = self._ensure_db()
        async with db.execute(
            "SELECT * FROM agent_sessions WHERE task_id = ? AND attempt = ? ORDER BY id DESC LIMIT 1",
            (task_id, attempt),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_session(row) if row else None

    async def list_sessions(self, task_id: str) -> list[AgentSession]:
        db = self._ensure_db()
        async with db.execute(
            "SELECT * FROM agent_sessions WHERE task_id = ? ORDER BY attempt, id", (task_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_session(r) for r in rows]

    async def load_sessions_grouped_by_task(self, project_id: str | None = None) -> dict[str, list[AgentSession]]:
        db = self._ensure_db()
        if project_id is None:
            query, params = "SELECT * FROM agent_sessions ORDER BY task_id, attempt, id", ()
        else:
            query = "SELECT * FROM agent_sessions WHERE project_id = ? ORDER BY task_id, attempt, id"
            params = (project_id,)
        grouped: dict[str, list[AgentSession]] = defaultdict(list)
        async with db.execute(query, params) as cursor:
            async for row in cursor:
                grouped[row["task_id"]].append(_row_to_session(row))
        return dict(grouped)

    async def count(self) -> int:
        db = self._ensure_db()
        async with db.execute("SELECT COUNT(*) AS n FROM agent_sessions") as cursor:
            row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    async def prune(self, keep: int) -> int:
        """Delete all but the newest *keep* sessions; returns how many were removed."""
        db = self._ensure_db()
        cursor = await db.execute(
            "DELETE FROM agent_sessions WHERE id NOT IN "
            "(SELECT id FROM agent_sessions ORDER BY id DESC LIMIT ?)",
            (max(keep, 0),),
        )
        await db.commit()
        return cursor.rowcount if cursor.rowcount is not None else 0


def _row_to_session(row: aiosqlite.Row) -> AgentSession:
    tests = json.loads(row["test_results"]) if row["test_results"] else None
    return AgentSession(
        task_id=row["task_id"],
        attempt=int(row["attempt"]),
        agent_type=row["agent_type"] or "",
        agent_model=row["agent_model"] or "",
        started_at=float(row["started_at"]),
        completed_at=float(row["completed_at"]),
        status=row["status"],
        output_log=row["output_log"] or "",
        git_branch=row["git_branch"] or "",
        git_diff=row["git_diff"] or "",
        test_results=tests,
        failure_reason=row["failure_reason"],
        summary=row["summary"],
    )
