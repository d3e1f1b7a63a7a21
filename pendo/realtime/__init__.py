"""Realtime distribution of conversation, queue and notification events."""

from __future__ import annotations

import logging
import os

from ..core.db import get_database_url
from .broker import (
    NOTIFICATIONS_ROOM,
    QUEUE_ROOM,
    Broker,
    Event,
    InMemoryBroker,
    Subscription,
    conversation_room,
)

logger = logging.getLogger(__name__)


def create_broker() -> Broker:
    """Pick the transport from ``REALTIME_BACKEND`` (default: postgres when configured)."""

    database_url = get_database_url()
    backend = os.getenv("REALTIME_BACKEND", "postgres" if database_url else "memory").lower()
    if backend == "postgres":
        if not database_url:
            raise RuntimeError("REALTIME_BACKEND=postgres requires DATABASE_URL")
        from .postgres import PostgresNotifyBroker

        logger.info("Using PostgreSQL LISTEN/NOTIFY realtime broker")
        return PostgresNotifyBroker(database_url)
    if backend != "memory":
        raise RuntimeError(f"Unknown REALTIME_BACKEND '{backend}'")
    logger.info("Using in-process realtime broker")
    return InMemoryBroker()


__all__ = [
    "NOTIFICATIONS_ROOM",
    "QUEUE_ROOM",
    "Broker",
    "Event",
    "InMemoryBroker",
    "Subscription",
    "conversation_room",
    "create_broker",
]
