"""Tests for the plan event bus."""

from __future__ import annotations

import json
from pathlib import Path

from attoplan.plan.events import (
    NodeTransition,
    PlanCreated,
    PlanDeleted,
    PlanEvent,
    PlanEventBus,
    event_to_dict,
)


class TestPlanEventBus:
    def test_emit_and_history(self) -> None:
        bus = PlanEventBus()
        bus.emit(PlanCreated(plan_id="p1", name="demo"))
        assert len(bus.history) == 1
        assert bus.history[0].plan_id == "p1"

    def test_subscribers_see_events_in_order(self) -> None:
        bus = PlanEventBus()
        received: list[PlanEvent] = []
        bus.subscribe(received.append)
        bus.emit(PlanCreated(plan_id="p1"))
        bus.emit(PlanDeleted(plan_id="p1"))
        assert [e.kind for e in received] == ["plan_created", "plan_deleted"]

    def test_unsubscribe_handle(self) -> None:
        bus = PlanEventBus()
        received: list[PlanEvent] = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        bus.emit(PlanCreated(plan_id="p1"))
        assert received == []

    def test_subscriber_error_does_not_propagate(self) -> None:
        bus = PlanEventBus()
        seen: list[PlanEvent] = []

        def bad_callback(event: PlanEvent) -> None:
            raise RuntimeError("boom")

        bus.subscribe(bad_callback)
        bus.subscribe(seen.append)
        bus.emit(PlanCreated(plan_id="p1"))
        assert len(seen) == 1

    def test_history_limit_and_recent(self) -> None:
        bus = PlanEventBus(history_limit=5)
        for i in range(8):
            bus.emit(PlanDeleted(plan_id=f"p{i}"))
        assert [e.plan_id for e in bus.history] == ["p3", "p4", "p5", "p6", "p7"]
        assert [e.plan_id for e in bus.recent(2)] == ["p6", "p7"]

    def test_persists_jsonl(self, tmp_path: Path) -> None:
        path = tmp_path / "events" / "plan.events.jsonl"
        bus = PlanEventBus(persist_path=path)
        bus.emit(NodeTransition(plan_id="p", node_id="n", previous="ready", current="scheduled", version=2))
        rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert rows[0]["type"] == "node_transition"
        assert rows[0]["current"] == "scheduled"


def test_event_to_dict() -> None:
    row = event_to_dict(PlanCreated(plan_id="p", name="n", timestamp=1.0))
    assert row == {"type": "plan_created", "plan_id": "p", "name": "n", "timestamp": 1.0}
