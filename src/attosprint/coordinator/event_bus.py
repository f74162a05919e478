"""Orchestrator notifications.

Lifecycle, crash recovery and the driving loop publish
``OrchestratorEvent`` records here.  UI bridges subscribe, optionally to
a subset of event types; everything except streamed agent output is
kept in a bounded history and appended to ``events.jsonl``.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from attosprint.protocol.models import OrchestratorEvent

logger = logging.getLogger(__name__)

# Delivered to live subscribers only; never kept in history or the event log.
TRANSIENT_EVENT_TYPES: frozenset[str] = frozenset({"agent.output"})

EventCallback = Callable[[OrchestratorEvent], Any]


@dataclass(slots=True)
class _Subscription:
    callback: EventCallback
    types: frozenset[str] | None

    def wants(self, event: OrchestratorEvent) -> bool:
        return self.types is None or event.type in self.types


class EventBus:
    def __init__(self, persist_path: str | Path | None = None, history_limit: int = 1000) -> None:
        self._subscriptions: list[_Subscription] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._history: deque[OrchestratorEvent] = deque(maxlen=history_limit)

    @property
    def persist_path(self) -> Path | None:
        return self._persist_path

    def emit(self, event: OrchestratorEvent) -> None:
        # A failing subscriber never blocks the rest.
        for sub in list(self._subscriptions):
            if not sub.wants(event):
                continue
            try:
                sub.callback(event)
            except Exception as exc:
                logger.debug("Subscriber %r failed on %s: %s", sub.callback, event.type, exc)

        if event.type in TRANSIENT_EVENT_TYPES:
            return
        self._history.append(event)
        if self._persist_path is not None:
            self._append(self._persist_path, event)

    def subscribe(self, callback: EventCallback, types: Iterable[str] | None = None) -> None:
        """Deliver events to *callback*; only those whose type is in *types* when given."""
        self._subscriptions.append(_Subscription(callback, frozenset(types) if types is not None else None))

    def unsubscribe(self, callback: EventCallback) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.callback is not callback]

    @property
    def history(self) -> list[OrchestratorEvent]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[OrchestratorEvent]:
        return list(self._history)[-n:] if n > 0 else []

    def for_task(self, task_id: str) -> list[OrchestratorEvent]:
        return [e for e in self._history if e.task_id == task_id]

    @staticmethod
    def _append(path: Path, event: OrchestratorEvent) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(asdict(event)) + "\n")
        except OSError as exc:
            logger.warning("Cannot append to event log %s: %s", path, exc)


def load_events(path: str | Path, task_id: str | None = None, limit: int | None = None) -> list[OrchestratorEvent]:
    """Read an ``events.jsonl`` file back, skipping lines that do not parse."""
    p = Path(path)
    if not p.exists():
        return []
    events: list[OrchestratorEvent] = []
    with p.open(encoding="utf-8") as fh:
        for line in fh:
            try:
                raw = json.loads(line)
                event = OrchestratorEvent(
                    type=str(raw["type"]),
                    project_id=str(raw.get("project_id", "")),
                    task_id=str(raw.get("task_id", "")),
                    payload=dict(raw.get("payload") or {}),
                    timestamp=float(raw.get("timestamp", 0.0)),
                )
            except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                continue
            if task_id is None or event.task_id == task_id:
                events.append(event)
    return events[-limit:] if limit else events
