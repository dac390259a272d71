from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, AsyncIterator

from outreach.domain.models import Event, EventType


@dataclass(eq=False)
class Subscription:
    """One listener's queue. Identity-hashed so the bus can hold it in a set."""
    queue: asyncio.Queue[Event]
    closed: bool = False


class EventBus:
    """Fan-out of status, inbound and broadcast events to live listeners.

    Events are numbered in emit order. A listener that falls behind loses its
    oldest queued event; producers never wait on listeners.
    """

    def __init__(self, max_queue_size: int = 1000):
        self._listeners: set[Subscription] = set()
        self._counter = itertools.count(1)
        self._last_seq = 0
        self._max_queue_size = max_queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    async def next_seq(self) -> int:
        self._last_seq = next(self._counter)
        return self._last_seq

    def subscribe(self) -> Subscription:
        sub = Subscription(queue=asyncio.Queue(maxsize=self._max_queue_size))
        self._listeners.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        self._listeners.discard(sub)

    async def emit(self, type: EventType, payload: dict[str, Any]) -> Event:
        evt = Event(seq=await self.next_seq(), type=type, payload=payload)
        await self.publish(evt)
        return evt

    async def publish(self, evt: Event) -> None:
        for sub in [s for s in self._listeners if s.closed]:
            self._listeners.discard(sub)
        for sub in self._listeners:
            if sub.queue.full():
                sub.queue.get_nowait()
            sub.queue.put_nowait(evt)

    async def iter(self, sub: Subscription) -> AsyncIterator[Event]:
        while not sub.closed:
            yield await sub.queue.get()
