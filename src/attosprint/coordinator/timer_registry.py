"""Named timers on top of the running asyncio loop.

Every periodic job in a project (heartbeat writes, inactivity checks,
output tailing, recovery polling, loop scheduling) is registered here
under a name, so setting a name twice never leaks a timer and a project
can be torn down with one ``clear_all()``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Any]


class TimerRegistry:
    def __init__(self, label: str = "") -> None:
        self._label = label
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._callbacks: set[asyncio.Task[Any]] = set()

    def set_interval(self, name: str, fn: TimerCallback, seconds: float) -> None:
        """Run *fn* every *seconds*, replacing any timer already named *name*."""
        self.clear(name)
        loop = asyncio.get_running_loop()
        self._timers[name] = loop.create_task(self._run_interval(name, fn, seconds))

    def set_timeout(self, name: str, fn: TimerCallback, seconds: float) -> None:
        """Run *fn* once after *seconds*, replacing any timer already named *name*."""
        self.clear(name)
        loop = asyncio.get_running_loop()
        self._timers[name] = loop.create_task(self._run_timeout(name, fn, seconds))

    def clear(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    def has(self, name: str) -> bool:
        return name in self._timers

    def clear_all(self) -> None:
        for name in list(self._timers):
            self.clear(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._timers)

    async def drain(self) -> None:
        """Wait for callback tasks spawned by fired timers to finish."""
        while self._callbacks:
            await asyncio.gather(*list(self._callbacks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_interval(self, name: str, fn: TimerCallback, seconds: float) -> None:
        while True:
            await asyncio.sleep(seconds)
            self._invoke(name, fn)

    async def _run_timeout(self, name: str, fn: TimerCallback, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if self._timers.get(name) is asyncio.current_task():
            del self._timers[name]
        self._invoke(name, fn)

    def _invoke(self, name: str, fn: TimerCallback) -> None:
        try:
            result = fn()
        except Exception:
            logger.exception("Timer %s%s callback failed", self._prefix(), name)
            return
        if inspect.isawaitable(result):
            # Run outside the timer task so the callback may clear its own timer.
            task = asyncio.ensure_future(result)
            self._callbacks.add(task)
            task.add_done_callback(lambda t, n=name: self._on_callback_done(n, t))

    def _on_callback_done(self, name: str, task: asyncio.Task[Any]) -> None:
        self._callbacks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Timer %s%s callback raised: %s", self._prefix(), name, exc, exc_info=exc)

    def _prefix(self) -> str:
        return f"{self._label}/" if self._label else ""
