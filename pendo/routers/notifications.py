"""Counsellor notification routes."""

from fastapi import APIRouter, Depends, Request

from ..conversations import ChatCore
from ..conversations import schemas
from ..core.auth import Principal, require_role
from ..realtime import NOTIFICATIONS_ROOM
from ..realtime.notifications import NotificationService
from ..sse_utils import event_stream, sse_response
from ._common import get_chat_core

router = APIRouter(tags=["notifications"])


def get_notification_service(core: ChatCore = Depends(get_chat_core)) -> NotificationService:
    return NotificationService(core.broker)


@router.post(
    "/api/notifications/video-session",
    response_model=schemas.Notification,
    status_code=202,
)
async def notify_video_session(
    payload: schemas.VideoSessionNotification,
    principal: Principal = Depends(require_role("counsellor")),
    service: NotificationService = Depends(get_notification_service),
) -> schemas.Notification:
    """Announce a scheduled video session to connected counsellor dashboards."""
    return await service.notify_video_session(payload)


@router.get("/api/notifications/events")
async def notification_events(
    request: Request,
    principal: Principal = Depends(require_role("counsellor")),
    core: ChatCore = Depends(get_chat_core),
):
    # Notifications are not stored, so the snapshot is always empty.
    subscription = core.broker.subscribe(NOTIFICATIONS_ROOM)
    return sse_response(
        event_stream(subscription, {"items": []}, is_disconnected=request.is_disconnected)
    )
