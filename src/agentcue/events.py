"""Queue event channel.

Observers subscribe and receive immutable `QueueEvent` records through their
own bounded asyncio queue. Publishing never blocks the queue and observers
never get a handle on queue internals.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Lifecycle events published by the task queue."""

    SUBMITTED = "submitted"
    ACTIVE = "active"
    PROGRESS = "progress"
    COMPLETED = "completed"
    RETRYING = "retrying"
    STALLED = "stalled"
    FAILED = "failed"


@dataclass(frozen=True)
class QueueEvent:
    """Something that happened to a job."""

    kind: EventKind
    job_id: str
    task_id: str
    agent_type: str
    user_id: str = ""
    attempt: int = 0
    progress: int | None = None
    duration_ms: float | None = None
    error: str | None = None
    usage: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)


class Subscription:
    """A subscriber's view of the channel. Iterate with `async for`."""

    def __init__(self, channel: EventChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[QueueEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _deliver(self, event: QueueEvent | None) -> bool:
        """Enqueue an event. Returns True if an older event was discarded."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # Slow consumer: discard the oldest event to make room
            self._queue.get_nowait()
            self._queue.put_nowait(event)
            self.dropped += 1
            return True
        return False

    async def get(self) -> QueueEvent | None:
        """Next event, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            self.closed = True
        return event

    def get_nowait(self) -> QueueEvent | None:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if event is None:
            self.closed = True
        return event

    def close(self) -> None:
        if not self.closed:
            self._channel._unsubscribe(self)
            self._deliver(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> QueueEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventChannel:
    """Fan-out of queue events to any number of subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    def subscribe(self, maxsize: int = 1000) -> Subscription:
        sub = Subscription(self, maxsize)
        self._subscribers.append(sub)
        return sub

    def publish(self, event: QueueEvent) -> None:
        for sub in list(self._subscribers):
            if sub._deliver(event) and sub.dropped % 100 == 1:
                logger.warning("Subscriber is falling behind, %d events dropped", sub.dropped)

    def close(self) -> None:
        """Close every subscription; consumers see end of stream."""
        for sub in list(self._subscribers):
            sub.close()

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def __len__(self) -> int:
        return len(self._subscribers)
