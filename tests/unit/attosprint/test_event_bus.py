"""Tests for the orchestrator event bus and the JSONL event log."""

from __future__ import annotations

import json
from pathlib import Path

from attosprint.coordinator.event_bus import EventBus, load_events
from attosprint.protocol.models import OrchestratorEvent


def _event(event_type: str, task_id: str = "t1", **payload: object) -> OrchestratorEvent:
    return OrchestratorEvent(type=event_type, project_id="p1", task_id=task_id, payload=dict(payload))


class TestEventBus:
    def test_emit_and_history(self) -> None:
        bus = EventBus()
        bus.emit(_event("agent.started", pid=12))
        assert len(bus.history) == 1
        assert bus.history[0].type == "agent.started"
        assert bus.history[0].payload == {"pid": 12}

    def test_subscribe_receives_events(self) -> None:
        bus = EventBus()
        received: list[OrchestratorEvent] = []
        bus.subscribe(received.append)
        bus.emit(_event("task.updated", task_id="t9"))
        assert [e.task_id for e in received] == ["t9"]

    def test_subscribe_with_type_filter(self) -> None:
        bus = EventBus()
        received: list[OrchestratorEvent] = []
        bus.subscribe(received.append, types=["agent.completed", "task.updated"])
        bus.emit(_event("agent.started"))
        bus.emit(_event("agent.output", chunk="x"))
        bus.emit(_event("agent.completed", exit_code=0))
        assert [e.type for e in received] == ["agent.completed"]

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        received: list[OrchestratorEvent] = []
        cb = received.append
        bus.subscribe(cb)
        bus.unsubscribe(cb)
        bus.emit(_event("task.updated"))
        assert received == []

    def test_agent_output_reaches_subscribers_only(self, tmp_path: Path) -> None:
        log = tmp_path / "events.jsonl"
        bus = EventBus(persist_path=log)
        received: list[OrchestratorEvent] = []
        bus.subscribe(received.append)

        bus.emit(_event("agent.output", chunk="hello\n"))

        assert len(received) == 1
        assert bus.history == []
        assert not log.exists()

    def test_subscriber_error_does_not_stop_delivery(self) -> None:
        bus = EventBus()
        received: list[OrchestratorEvent] = []

        def broken(event: OrchestratorEvent) -> None:
            raise RuntimeError("ui went away")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.emit(_event("build.status", status="running"))
        assert len(received) == 1
        assert len(bus.history) == 1

    def test_history_limit(self) -> None:
        bus = EventBus(history_limit=3)
        for i in range(5):
            bus.emit(_event("task.updated", task_id=f"t{i}"))
        assert [e.task_id for e in bus.history] == ["t2", "t3", "t4"]

    def test_recent_and_for_task(self) -> None:
        bus = EventBus()
        for i in range(10):
            bus.emit(_event("task.updated", task_id=f"t{i % 2}"))
        assert len(bus.recent(3)) == 3
        assert bus.recent(0) == []
        assert len(bus.for_task("t1")) == 5

    def test_persist_jsonl(self, tmp_path: Path) -> None:
        log = tmp_path / "nested" / "events.jsonl"
        bus = EventBus(persist_path=log)
        bus.emit(_event("agent.started", pid=1))
        bus.emit(_event("agent.completed", exit_code=0))

        lines = log.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["type"] == "agent.started"
        assert first["project_id"] == "p1"
        assert first["payload"] == {"pid": 1}

    def test_persist_failure_keeps_history(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x", encoding="utf-8")
        bus = EventBus(persist_path=blocker / "events.jsonl")
        bus.emit(_event("task.updated"))
        assert len(bus.history) == 1


class TestLoadEvents:
    def test_round_trip_with_filters(self, tmp_path: Path) -> None:
        log = tmp_path / "events.jsonl"
        bus = EventBus(persist_path=log)
        for i in range(4):
            bus.emit(_event("task.updated", task_id="t1", n=i))
        bus.emit(_event("agent.started", task_id="t2"))

        assert len(load_events(log)) == 5
        assert [e.payload["n"] for e in load_events(log, task_id="t1", limit=2)] == [2, 3]
        assert [e.type for e in load_events(log, task_id="t2")] == ["agent.started"]

    def test_bad_lines_are_skipped(self, tmp_path: Path) -> None:
        log = tmp_path / "events.jsonl"
        log.write_text(
            '{"type": "task.updated", "project_id": "p1", "task_id": "t1"}\n'
            "not json\n"
            '{"project_id": "p1"}\n'
            "42\n",
            encoding="utf-8",
        )
        events = load_events(log)
        assert [e.type for e in events] == ["task.updated"]

    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_events(tmp_path / "nope.jsonl") == []
