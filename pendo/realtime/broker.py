"""Room-scoped event fan-out.

A *room* is a logical channel: one per conversation plus a shared ``queue``
room for counsellors watching the waiting list and a ``notifications`` room for
dashboard alerts. Delivery is at-least-once and ordered per room for
subscribers connected at publish time. Nothing here is durable: a client that
reconnects must re-read state from the conversation store, which is why every
event stream starts with a snapshot (see :mod:`pendo.sse_utils`).
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)

QUEUE_ROOM = "queue"
NOTIFICATIONS_ROOM = "notifications"

_CLOSED = object()


def conversation_room(conversation_id: UUID | str) -> str:
    return f"conversation:{conversation_id}"


@dataclass(frozen=True)
class Event:
    room: str
    seq: int
    type: str
    data: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "room": self.room,
            "seq": self.seq,
            "type": self.type,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }


class Subscription:
    """An async iterator of events for one room.

    The buffer is bounded; a subscriber that falls behind is closed with
    ``overflowed`` set instead of silently skipping events, so the client
    reconnects and re-fetches.
    """

    def __init__(self, broker: "InMemoryBroker", room: str, maxsize: int) -> None:
        self.room = room
        self.overflowed = False
        self._broker = broker
        self._maxsize = maxsize
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: Event) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= self._maxsize:
            logger.warning(
                "Subscriber on %s fell behind (%d buffered); closing", self.room, self._maxsize
            )
            self.overflowed = True
            self.close()
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> Event | None:
        """Wait for the next event; ``None`` once the subscription is closed."""

        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the marker so repeated calls keep returning None.
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class Broker(Protocol):
    async def publish(self, room: str, type: str, data: dict[str, Any]) -> Event | None: ...

    def subscribe(self, room: str) -> Subscription: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class InMemoryBroker:
    """Single-process broker: publish dispatches straight to local subscribers."""

    def __init__(self, buffer_size: int | None = None) -> None:
        self._buffer_size = buffer_size or int(os.getenv("SUBSCRIBER_BUFFER_SIZE", "256"))
        self._rooms: dict[str, set[Subscription]] = defaultdict(set)
        # Counters outlive their subscribers so a reconnecting client never sees
        # a room's seq rewind. One int per room for the life of the process;
        # multi-instance deployments use the shared database sequence instead.
        self._seq: dict[str, int] = defaultdict(int)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        for subscribers in list(self._rooms.values()):
            for sub in list(subscribers):
                sub.close()

    def subscribe(self, room: str) -> Subscription:
        sub = Subscription(self, room, self._buffer_size)
        self._rooms[room].add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subscribers = self._rooms.get(sub.room)
        if subscribers is None:
            return
        subscribers.discard(sub)
        if not subscribers:
            self._rooms.pop(sub.room, None)

    def subscriber_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def publish(self, room: str, type: str, data: dict[str, Any]) -> Event | None:
        self._seq[room] += 1
        event = Event(room=room, seq=self._seq[room], type=type, data=data)
        self.dispatch(event)
        return event

    def dispatch(self, event: Event) -> None:
        for sub in list(self._rooms.get(event.room, ())):
            sub.offer(event)
