"""Post-commit change notifications fanned out per owner."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Dict, Protocol
from weakref import WeakSet

from ..config.loader import DEFAULT_LISTENER_QUEUE_SIZE
from .logging import get_logger

logger = get_logger(__name__)


class ChangeEventType(str, Enum):
    """Kinds of time-entry change published after commit."""

    ENTRY_STARTED = "entry_started"
    ENTRY_STOPPED = "entry_stopped"
    ENTRY_UPDATED = "entry_updated"
    ENTRY_DELETED = "entry_deleted"


@dataclass(frozen=True)
class ChangeEvent:
    owner_id: int
    type: ChangeEventType
    payload: Dict[str, Any]
    occurred_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "type": self.type.value,
            "payload": self.payload,
            "occurredAt": self.occurred_at.isoformat(),
        }


class ChangeListener(Protocol):  # pragma: no cover - interface only
    """Receives events for the owner it is subscribed under."""

    def deliver(self, event: ChangeEvent) -> None:
        """Handle one event; must not block for long."""


class ChangeNotifier(Protocol):  # pragma: no cover - interface only
    """Abstract change-event publisher."""

    def publish(
        self,
        owner_id: int,
        event_type: ChangeEventType,
        payload: Dict[str, Any],
    ) -> None:
        """Deliver an event to the owner's current listeners."""


class SubscriberRegistry:
    """Thread-safe ``owner_id -> listeners`` map holding weak references only."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._listeners: Dict[int, WeakSet[ChangeListener]] = {}

    def subscribe(self, owner_id: int, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.setdefault(owner_id, WeakSet()).add(listener)

    def unsubscribe(self, owner_id: int, listener: ChangeListener) -> None:
        with self._lock:
            listeners = self._listeners.get(owner_id)
            if listeners is None:
                return
            listeners.discard(listener)
            if not listeners:
                del self._listeners[owner_id]

    def listeners_for(self, owner_id: int) -> list[ChangeListener]:
        with self._lock:
            listeners = self._listeners.get(owner_id)
            if listeners is None:
                return []
            snapshot = list(listeners)
            if not snapshot:
                del self._listeners[owner_id]
            return snapshot

    def subscriber_count(self, owner_id: int) -> int:
        return len(self.listeners_for(owner_id))


@dataclass(eq=False)
class QueueListener:
    """Listener that buffers events in a bounded queue, dropping on overflow."""

    maxsize: int = DEFAULT_LISTENER_QUEUE_SIZE
    dropped: int = 0
    _queue: "queue.Queue[ChangeEvent]" = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._queue = queue.Queue(maxsize=self.maxsize)

    def deliver(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ChangeEvent]:
        events: list[ChangeEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


class RegistryChangeNotifier(ChangeNotifier):
    """Fire-and-forget fan-out over a :class:`SubscriberRegistry`."""

    def __init__(
        self,
        registry: SubscriberRegistry | None = None,
        *,
        listener_queue_size: int = DEFAULT_LISTENER_QUEUE_SIZE,
    ) -> None:
        self.registry = registry or SubscriberRegistry()
        self.listener_queue_size = listener_queue_size

    def listen(self, owner_id: int) -> QueueListener:
        """Subscribe and return a new queue listener.

        The registry only holds a weak reference; the caller keeps the
        listener alive for as long as it wants events.
        """

        listener = QueueListener(maxsize=self.listener_queue_size)
        self.registry.subscribe(owner_id, listener)
        return listener

    def publish(
        self,
        owner_id: int,
        event_type: ChangeEventType,
        payload: Dict[str, Any],
    ) -> None:
        event = ChangeEvent(
            owner_id=owner_id,
            type=ChangeEventType(event_type),
            payload=payload,
            occurred_at=datetime.now(timezone.utc),
        )
        listeners = self.registry.listeners_for(owner_id)
        for listener in listeners:
            try:
                listener.deliver(event)
            except Exception:
                logger.exception(
                    "change_listener_failed",
                    extra={"owner_id": owner_id, "event_type": event.type.value},
                )
        logger.debug(
            "change_event_published",
            extra={
                "owner_id": owner_id,
                "event_type": event.type.value,
                "listeners": len(listeners),
            },
        )


_singleton: RegistryChangeNotifier | None = None


def get_change_notifier() -> RegistryChangeNotifier:
    """Return the process-wide change notifier."""

    global _singleton
    if _singleton is None:
        _singleton = RegistryChangeNotifier()
    return _singleton
