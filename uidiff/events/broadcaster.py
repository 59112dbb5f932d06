"""Progress broadcasting — best-effort fan-out of report and batch events."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

EventType = Literal[
    "report:progress",
    "report:completed",
    "report:failed",
    "task:progress",
    "task:completed",
]


class ProgressEvent(BaseModel):
    task_or_report_id: str
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)

    def to_message(self) -> dict[str, Any]:
        """Wire shape sent to subscribers outside the process."""
        return {
            "taskId": self.task_or_report_id,
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class ProgressBroadcaster(Protocol):
    async def broadcast(self, event: ProgressEvent) -> None: ...


class NullBroadcaster:
    """Discards every event."""

    async def broadcast(self, event: ProgressEvent) -> None:
        return None


@dataclass
class Subscription:
    queue: asyncio.Queue
    topic: Optional[str] = None  # only events for this id; None = everything
    dropped: int = 0

    def wants(self, event: ProgressEvent) -> bool:
        return self.topic is None or self.topic == event.task_or_report_id

    async def get(self, timeout: float | None = None) -> ProgressEvent:
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


@dataclass
class _Listener:
    callback: Callable[[ProgressEvent], Any]
    failures: int = field(default=0)


class EventHub:
    """In-process broadcaster.

    ``broadcast`` never blocks on consumers: each subscriber has a bounded
    queue and events are dropped for subscribers whose queue is full.
    Listener callbacks are plain functions run inline; their exceptions are logged and ignored.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._by_key: dict[int, Subscription] = {}
        self._listeners: list[_Listener] = []
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str | None = None) -> Subscription:
        sub = Subscription(queue=asyncio.Queue(maxsize=self.queue_size), topic=topic)
        async with self._lock:
            self._by_key[id(sub)] = sub
        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        async with self._lock:
            self._by_key.pop(id(sub), None)

    def add_listener(self, callback: Callable[[ProgressEvent], Any]) -> None:
        self._listeners.append(_Listener(callback))

    def remove_listener(self, callback: Callable[[ProgressEvent], Any]) -> None:
        self._listeners = [l for l in self._listeners if l.callback != callback]

    @property
    def subscriber_count(self) -> int:
        return len(self._by_key)

    async def broadcast(self, event: ProgressEvent) -> None:
        async with self._lock:
            subs = list(self._by_key.values())

        for sub in subs:
            if not sub.wants(event):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                if sub.dropped == 1 or sub.dropped % 100 == 0:
                    logger.warning("Subscriber queue full, dropped %d events", sub.dropped)

        for listener in list(self._listeners):
            try:
                listener.callback(event)
            except Exception as e:
                listener.failures += 1
                logger.warning("Progress listener failed on %s: %s", event.type, e)
