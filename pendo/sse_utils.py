"""Server-Sent Events helpers for live conversation and queue views.

Event format produced:
- "event: snapshot" with the current state read from the store, always first
- "event: <type>" (message, conversation, queue, notification) for live events,
  with ``id:`` set to the room sequence so clients can drop duplicates
- "event: overflow" when the subscriber fell behind; the client must reconnect
- "event: revoked" when the caller lost access to the room mid-stream
- ": keepalive" comments while the room is idle

The subscription is opened *before* the snapshot is read, so nothing published
in between is lost; at worst an event is both in the snapshot and streamed.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi.responses import StreamingResponse

from .realtime import Event, Subscription


def format_sse(event: str, data: Any, *, event_id: int | None = None) -> str:
    """Render one SSE frame. ``data`` is JSON-encoded on a single line."""

    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, ensure_ascii=False, default=str)}")
    return "\n".join(lines) + "\n\n"


async def event_stream(
    subscription: Subscription,
    snapshot: Any,
    *,
    keepalive: float | None = None,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    allow: Callable[[Event], bool] | None = None,
) -> AsyncIterator[str]:
    """Yield a snapshot frame then live events until the client goes away.

    Parameters
    ----------
    subscription:
        Room subscription opened before ``snapshot`` was read.
    snapshot:
        JSON-serialisable current state.
    keepalive:
        Seconds of silence before a keepalive comment; defaults to
        ``SSE_KEEPALIVE_SECONDS``.
    is_disconnected:
        Usually ``request.is_disconnected``; checked between frames.
    allow:
        Access check run on every live event. When it returns ``False`` a
        ``revoked`` frame is sent and the stream ends without forwarding that
        event or anything after it.
    """

    interval = keepalive or float(os.getenv("SSE_KEEPALIVE_SECONDS", "15"))
    try:
        yield format_sse("snapshot", snapshot)
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=interval)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            if event is None:
                if subscription.overflowed:
                    yield format_sse("overflow", {"room": subscription.room})
                break
            if allow is not None and not allow(event):
                yield format_sse("revoked", {"room": subscription.room})
                break
            yield format_sse(event.type, event.to_dict(), event_id=event.seq)
    finally:
        subscription.close()


def sse_response(stream: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(
        stream,
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
