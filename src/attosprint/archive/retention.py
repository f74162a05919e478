"""Periodic pruning of the session archive."""

from __future__ import annotations

import logging

from attosprint.archive.sessions import SessionArchive
from attosprint.coordinator.timer_registry import TimerRegistry

logger = logging.getLogger(__name__)

RETENTION_TIMER = "session-retention"


class SessionRetentionService:
    def __init__(
        self,
        archive: SessionArchive,
        *,
        keep: int = 100,
        interval_seconds: float = 3600.0,
        timers: TimerRegistry | None = None,
    ) -> None:
        self._archive = archive
        self._keep = keep
        self._interval = interval_seconds
        self._timers = timers or TimerRegistry("retention")

    @property
    def running(self) -> bool:
        return self._timers.has(RETENTION_TIMER)

    def start(self) -> None:
        if self.running:
            return
        self._timers.set_interval(RETENTION_TIMER, self.run_once, self._interval)

    def stop(self) -> None:
        self._timers.clear(RETENTION_TIMER)

    async def run_once(self) -> int:
        try:
            removed = await self._archive.prune(self._keep)
        except Exception as exc:
            logger.warning("Session retention pass failed: %s", exc)
            return 0
        if removed:
            logger.info("Pruned %d archived sessions (keeping %d)", removed, self._keep)
        return removed
