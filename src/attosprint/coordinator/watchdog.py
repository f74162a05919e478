"""Periodic reconciler that runs a full recovery pass per project."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from attosprint.coordinator.recovery import RecoveryResult, RecoveryService
from attosprint.coordinator.timer_registry import TimerRegistry
from attosprint.protocol.contracts import RecoveryHost

logger = logging.getLogger(__name__)

WATCHDOG_TIMER = "watchdog"


@dataclass(slots=True)
class WatchdogTarget:
    project_id: str
    repo_path: Path


TargetSource = Callable[[], list[WatchdogTarget] | Awaitable[list[WatchdogTarget]]]


class WatchdogService:
    def __init__(
        self,
        recovery: RecoveryService,
        host: RecoveryHost,
        *,
        interval_seconds: float = 300.0,
        timers: TimerRegistry | None = None,
    ) -> None:
        self._recovery = recovery
        self._host = host
        self._interval = interval_seconds
        self._timers = timers or TimerRegistry("watchdog")
        self._get_targets: TargetSource | None = None

    @property
    def running(self) -> bool:
        return self._timers.has(WATCHDOG_TIMER)

    def start(self, get_targets: TargetSource) -> None:
        """Begin periodic checks; a second call while running is ignored."""
        if self.running:
            return
        self._get_targets = get_targets
        self._timers.set_interval(WATCHDOG_TIMER, self.run_checks, self._interval)
        logger.info("Watchdog started (every %.0fs)", self._interval)

    def stop(self) -> None:
        self._timers.clear(WATCHDOG_TIMER)

    async def run_checks(self) -> dict[str, RecoveryResult]:
        results: dict[str, RecoveryResult] = {}
        if self._get_targets is None:
            return results
        try:
            targets = self._get_targets()
            if inspect.isawaitable(targets):
                targets = await targets
        except Exception as exc:
            logger.warning("Watchdog could not list targets: %s", exc)
            return results

        for target in targets:
            try:
                result = await self._recovery.run_full_recovery(target.project_id, target.repo_path, self._host)
            except Exception as exc:
                logger.warning("Watchdog check failed for %s: %s", target.project_id, exc)
                continue
            results[target.project_id] = result
            if result.requeued:
                logger.warning(
                    "Watchdog recovered %d task(s) in %s: %s",
                    len(result.requeued),
                    target.project_id,
                    ", ".join(result.requeued),
                )
        return results
