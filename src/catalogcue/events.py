"""Typed lifecycle events and a fan-out bus to publish them on."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Things the orchestrator tells the outside world about."""

    TASK_ENQUEUED = "task-enqueued"
    TASK_STARTED = "task-started"
    TASK_COMPLETED = "task-completed"
    TASK_RETRY = "task-retry"
    TASK_FAILED_PERMANENTLY = "task-failed-permanently"
    RATE_LIMITED = "rate-limited"
    RECORD_INVALID = "record-invalid"
    RECORDS_FLUSHED = "records-flushed"
    STORAGE_ERROR = "storage-error"
    RUN_STARTED = "run-started"
    RUN_STOPPED = "run-stopped"


@dataclass(frozen=True)
class Event:
    """One published event."""

    kind: EventKind
    task_id: str | None = None
    target: str | None = None
    routing_key: str | None = None
    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """
    An async stream of events for one consumer.

    Example:
        async with bus.subscribe({EventKind.TASK_COMPLETED}) as events:
            async for event in events:
                print(event.target)
    """

    def __init__(self, bus: EventBus, kinds: frozenset[EventKind] | None, maxsize: int) -> None:
        self._bus = bus
        self.kinds = kinds
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def wants(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def _offer(self, event: Event | None) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> Event | None:
        """Next event, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def get_nowait(self) -> Event | None:
        """Next buffered event, or None if none is waiting."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list[Event]:
        """Everything currently buffered."""
        events = []
        while (event := self.get_nowait()) is not None:
            events.append(event)
        return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)
            self._offer(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *args) -> None:
        self.close()


class EventBus:
    """Publishes events to any number of subscribers and listeners.

    Subscriptions buffer events for async consumers. Listeners are plain
    callables invoked synchronously on publish; an exception in a listener
    is logged and does not reach the publisher.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[[Event], Any]] = []

    def subscribe(
        self,
        kinds: Iterable[EventKind | str] | None = None,
        *,
        maxsize: int = 0,
    ) -> Subscription:
        """Open a new subscription, optionally filtered to some event kinds."""
        wanted = frozenset(EventKind(k) for k in kinds) if kinds is not None else None
        sub = Subscription(self, wanted, maxsize)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def add_listener(self, listener: Callable[[Event], Any]) -> Callable[[Event], Any]:
        """Register a synchronous listener. Usable as a decorator."""
        self._listeners.append(listener)
        return listener

    def remove_listener(self, listener: Callable[[Event], Any]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: Event) -> None:
        for sub in list(self._subscriptions):
            if sub.wants(event):
                sub._offer(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed on %s", event.kind.value)

    def emit(self, kind: EventKind, **fields: Any) -> Event:
        """Build and publish an event in one call."""
        event = Event(kind=kind, **fields)
        self.publish(event)
        return event

    def close(self) -> None:
        """Close every open subscription."""
        for sub in list(self._subscriptions):
            sub.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)
