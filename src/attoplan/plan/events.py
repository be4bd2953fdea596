"""Plan lifecycle events.

The runtime publishes a fixed set of event types on a
:class:`PlanEventBus`; UI or API layers subscribe to it.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Union

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PlanCreated:
    kind: ClassVar[str] = "plan_created"
    plan_id: str
    name: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class PlanUpdated:
    kind: ClassVar[str] = "plan_updated"
    plan_id: str
    status: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class PlanDeleted:
    kind: ClassVar[str] = "plan_deleted"
    plan_id: str
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class NodeTransition:
    kind: ClassVar[str] = "node_transition"
    plan_id: str
    node_id: str
    previous: str
    current: str
    version: int = 0
    reason: str | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True, frozen=True)
class PlanCompleted:
    kind: ClassVar[str] = "plan_completed"
    plan_id: str
    status: str
    timestamp: float = field(default_factory=time.time)


PlanEvent = Union[PlanCreated, PlanUpdated, PlanDeleted, NodeTransition, PlanCompleted]
Subscriber = Callable[[PlanEvent], Any]


def event_to_dict(event: PlanEvent) -> dict[str, Any]:
    return {"type": event.kind, **asdict(event)}


class PlanEventBus:
    """In-process pub/sub for plan events.

    Subscribers receive every emitted event in emission order. A failing
    subscriber is logged and skipped. Events are optionally appended to
    a JSONL file.
    """

    def __init__(self, persist_path: str | Path | None = None, history_limit: int = 1000) -> None:
        self._subscribers: list[Subscriber] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._history: list[PlanEvent] = []
        self._history_limit = history_limit

    def emit(self, event: PlanEvent) -> None:
        """Deliver *event* to all subscribers and persist it."""
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as exc:
                logger.debug("PlanEventBus subscriber error: %s", exc)

        if self._persist_path:
            try:
                self._persist_path.parent.mkdir(parents=True, exist_ok=True)
                with self._persist_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(event_to_dict(event)) + "\n")
            except OSError as exc:
                logger.debug("PlanEventBus persist error: %s", exc)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    @property
    def history(self) -> list[PlanEvent]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[PlanEvent]:
        """Return the *n* most recent events."""
        return self._history[-n:]
