"""Ephemeral counsellor notifications (video-session invitations and similar)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..conversations import schemas
from .broker import NOTIFICATIONS_ROOM, Broker, Event

logger = logging.getLogger(__name__)

VIDEO_SESSION = "video_session"


class NotificationService:
    """Pushes notifications to connected counsellor dashboards.

    Nothing is persisted: a dashboard that is offline when the notification is
    sent does not receive it.
    """

    def __init__(self, broker: Broker) -> None:
        self._broker = broker

    async def notify(self, type: str, payload: dict[str, Any]) -> schemas.Notification:
        notification = schemas.Notification(
            type=type, payload=payload, created_at=datetime.now(timezone.utc)
        )
        event: Event | None = await self._broker.publish(
            NOTIFICATIONS_ROOM, "notification", notification.model_dump(mode="json")
        )
        logger.info(
            "Notification %s published (seq=%s)",
            type,
            event.seq if event is not None else "pending",
        )
        return notification

    async def notify_video_session(
        self, request: schemas.VideoSessionNotification
    ) -> schemas.Notification:
        payload = request.model_dump(exclude={"extra"}, exclude_none=True)
        payload.update(request.extra)
        return await self.notify(VIDEO_SESSION, payload)
