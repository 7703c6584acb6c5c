"""In-process event bus for workflow progress.

Delivery guarantees:

- events of a workflow reach every subscriber in emit order;
- every subscriber registered before an emit receives that event once;
- callback listeners run in the emitting thread, and their exceptions are
  logged rather than raised into the emitter;
- queue subscriptions buffer events until they are consumed, and can replay the
  bounded per-workflow history on subscribe.
"""

from __future__ import annotations

import queue
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from loguru import logger

from .constants import DEFAULT_EVENT_HISTORY
from .io_utils import append_jsonl
from .utils import _iso, _now, _short_id

TERMINAL_EVENT_TYPES = frozenset({"workflow.completed", "workflow.failed", "workflow.aborted"})

_CLOSED = object()


@dataclass
class WorkflowEvent:
    workflow_id: str
    type: str
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: _short_id("evt", 12))
    timestamp: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "type": self.type,
            "message": self.message,
            "data": dict(self.data),
            "timestamp": _iso(self.timestamp),
        }


EventListener = Callable[[WorkflowEvent], None]


class Subscription:
    """Buffered stream of events for one workflow (or all of them).

    Iterating blocks for the next event and stops after a terminal event or
    when the subscription is closed.
    """

    def __init__(self, bus: "EventBus", workflow_id: Optional[str]) -> None:
        self._bus = bus
        self.workflow_id = workflow_id
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self.closed = False

    def _deliver(self, event: WorkflowEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[WorkflowEvent]:
        """Return the next event, or None on timeout or after close."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._remove_subscription(self)
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[WorkflowEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item
            if item.is_terminal and self.workflow_id is not None:
                self.close()
                return

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Publish workflow events to listeners and subscriptions.

    Args:
        history_limit: Events kept per workflow for replay.
        events_path: Optional JSONL file every event is appended to.
    """

    def __init__(self, history_limit: int = DEFAULT_EVENT_HISTORY, events_path: Optional[Path] = None) -> None:
        self.history_limit = history_limit
        self.events_path = events_path
        self._lock = threading.RLock()
        self._history: dict[str, deque[WorkflowEvent]] = defaultdict(lambda: deque(maxlen=self.history_limit))
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[Optional[str], EventListener]] = []

    def emit(
        self,
        workflow_id: str,
        event_type: str,
        message: str = "",
        data: Optional[dict[str, Any]] = None,
    ) -> WorkflowEvent:
        event = WorkflowEvent(workflow_id=workflow_id, type=event_type, message=message, data=dict(data or {}))
        with self._lock:
            self._history[workflow_id].append(event)
            for subscription in list(self._subscriptions):
                if subscription.workflow_id in (None, workflow_id):
                    subscription._deliver(event)
            for scope, listener in list(self._listeners):
                if scope not in (None, workflow_id):
                    continue
                try:
                    listener(event)
                except Exception as exc:
                    logger.warning("Event listener failed for {}: {}", event_type, exc)
            if self.events_path is not None:
                try:
                    append_jsonl(self.events_path, event.to_dict())
                except OSError as exc:
                    logger.warning("Unable to append event to {}: {}", self.events_path, exc)
        return event

    def subscribe(self, workflow_id: Optional[str] = None, *, replay: bool = False) -> Subscription:
        """Open a buffered subscription; `replay` first delivers the stored history."""
        subscription = Subscription(self, workflow_id)
        with self._lock:
            if replay:
                if workflow_id is None:
                    backlog = sorted(
                        (event for events in self._history.values() for event in events),
                        key=lambda event: event.timestamp,
                    )
                else:
                    backlog = list(self._history.get(workflow_id, ()))
                for event in backlog:
                    subscription._deliver(event)
            self._subscriptions.append(subscription)
        return subscription

    def add_listener(self, listener: EventListener, workflow_id: Optional[str] = None) -> Callable[[], None]:
        """Register a synchronous callback; returns a function that removes it."""
        entry = (workflow_id, listener)
        with self._lock:
            self._listeners.append(entry)

        def remove() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return remove

    def history(self, workflow_id: str) -> list[WorkflowEvent]:
        with self._lock:
            return list(self._history.get(workflow_id, ()))

    def clear(self, workflow_id: str) -> int:
        """Drop the stored history of a workflow; returns the number of events removed."""
        with self._lock:
            events = self._history.pop(workflow_id, None)
        return len(events) if events else 0

    def _remove_subscription(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
