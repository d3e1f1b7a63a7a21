"""Change-feed transport built on PostgreSQL ``LISTEN``/``NOTIFY``.

Every server instance holds one listening connection and fans notifications
out to its local subscribers, so a message appended through instance A reaches
a student connected to instance B. Events are numbered from the shared
``realtime_event_seq`` sequence, which keeps them ordered within a room across
instances.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime
from typing import Any

import psycopg

from ..core.db import connect, with_retry
from .broker import Event, InMemoryBroker

logger = logging.getLogger(__name__)

CHANNEL = "pendo_events"

# NOTIFY payloads are limited to 8000 bytes.
MAX_PAYLOAD_BYTES = 7800


def _payload(room: str, type: str, data: dict[str, Any]) -> str:
    payload = json.dumps({"room": room, "type": type, "data": data}, default=str)
    if len(payload.encode("utf-8")) > MAX_PAYLOAD_BYTES:
        # Too large for NOTIFY: send a marker and let clients re-fetch.
        logger.info("Event %s on %s too large for NOTIFY; sending refetch marker", type, room)
        payload = json.dumps({"room": room, "type": type, "data": {"refetch": True}}, default=str)
    return payload


async def notify(
    conn: psycopg.AsyncConnection, room: str, type: str, data: dict[str, Any]
) -> None:
    """Queue an event on ``conn``.

    Inside a transaction the notification is delivered only on commit, and
    notifications are delivered in commit order. Writers that hold a row lock
    while numbering their rows therefore reach listeners in row order.
    """

    await conn.execute(
        """
        SELECT pg_notify(
            %s,
            jsonb_set(%s::jsonb, '{seq}', to_jsonb(nextval('realtime_event_seq')))::text
        )
        """,
        (CHANNEL, _payload(room, type, data)),
    )


class PostgresNotifyBroker(InMemoryBroker):
    """Publishes through ``pg_notify`` and dispatches what the listener receives.

    ``publish`` does not deliver locally; the instance's own notifications come
    back through the listener like everyone else's, so all instances see the
    same order.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        buffer_size: int | None = None,
        reconnect_delay: float = 1.0,
    ) -> None:
        super().__init__(buffer_size=buffer_size)
        self._database_url = database_url
        self._reconnect_delay = reconnect_delay
        self._listener: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()

    async def start(self) -> None:
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen(), name="pendo-notify-listener")
        await self._ready.wait()

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        await super().stop()

    async def publish(self, room: str, type: str, data: dict[str, Any]) -> Event | None:
        async def run() -> None:
            async with await connect(self._database_url, autocommit=True) as conn:
                await notify(conn, room, type, data)

        await with_retry(run, description=f"publish {type} to {room}")
        return None

    async def _listen(self) -> None:
        while True:
            try:
                async with await connect(self._database_url, autocommit=True) as conn:
                    await conn.execute(f"LISTEN {CHANNEL}")
                    logger.info("Listening for realtime events on channel %s", CHANNEL)
                    self._ready.set()
                    async for notify in conn.notifies():
                        self._handle(notify.payload)
            except asyncio.CancelledError:
                raise
            except psycopg.OperationalError as exc:
                logger.warning(
                    "Realtime listener lost its connection: %s; reconnecting in %.1fs",
                    exc,
                    self._reconnect_delay,
                )
                # Events published while disconnected are lost to local
                # subscribers; close them so clients reconnect and re-fetch.
                await InMemoryBroker.stop(self)
                await asyncio.sleep(self._reconnect_delay)

    def _handle(self, raw: str) -> None:
        try:
            body = json.loads(raw)
            event = Event(
                room=body["room"],
                seq=int(body["seq"]),
                type=body["type"],
                data=body.get("data") or {},
                created_at=datetime.now().astimezone(),
            )
        except (ValueError, KeyError, TypeError):
            logger.exception("Discarding malformed realtime notification")
            return
        self.dispatch(event)
