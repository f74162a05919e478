"""File-backed agent heartbeats under ``.attosprint/active/<task_id>/``."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from attosprint.protocol.io import read_json, unlink_quiet, write_json_atomic
from attosprint.protocol.models import HeartbeatRecord, SprintPaths, active_dir, active_root

log = logging.getLogger(__name__)


@dataclass(slots=True)
class StaleHeartbeat:
    task_id: str
    base_path: Path
    record: HeartbeatRecord
    age_seconds: float


class HeartbeatStore:
    def path_for(self, base_path: Path, task_id: str) -> Path:
        return active_dir(base_path, task_id) / SprintPaths.HEARTBEAT

    def write(self, base_path: Path, task_id: str, record: HeartbeatRecord) -> None:
        write_json_atomic(self.path_for(base_path, task_id), record.to_dict())

    def read(self, base_path: Path, task_id: str) -> HeartbeatRecord | None:
        raw = read_json(self.path_for(base_path, task_id), default=None)
        if not isinstance(raw, dict):
            return None
        try:
            return HeartbeatRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            return None

    def delete(self, base_path: Path, task_id: str) -> None:
        unlink_quiet(self.path_for(base_path, task_id))

    def find_stale(
        self,
        base_path: Path,
        stale_after_seconds: float,
        now: float | None = None,
    ) -> list[StaleHeartbeat]:
        """Heartbeats under *base_path* not refreshed within *stale_after_seconds*."""
        root = active_root(base_path)
        if not root.is_dir():
            return []
        now = time.time() if now is None else now
        stale: list[StaleHeartbeat] = []
        for entry in sorted(root.iterdir()):
            if not entry.is_dir() or entry.name.startswith(SprintPaths.RESERVED_PREFIX):
                continue
            record = self.read(base_path, entry.name)
            if record is None:
                continue
            age = now - record.heartbeat_timestamp
            if age > stale_after_seconds:
                stale.append(
                    StaleHeartbeat(task_id=entry.name, base_path=Path(base_path), record=record, age_seconds=age)
                )
        return stale
