"""Conversation API routes used by both the student and counsellor clients."""

import os
from typing import Callable
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..conversations import ChatCore, SenderRole
from ..conversations import schemas
from ..core.auth import Principal, get_current_principal, require_role
from ..realtime import Event, conversation_room
from ..sse_utils import event_stream, sse_response
from ._common import (
    MESSAGE_RATE_LIMIT,
    ensure_participant,
    get_chat_core,
    limiter,
    translate_errors,
)

router = APIRouter(tags=["conversations"])

CHAT_MAX_MESSAGE_LENGTH = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "5000"))


@router.post("/api/conversations", response_model=schemas.Conversation)
async def start_conversation(
    payload: schemas.StartConversationRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.Conversation:
    """Return the caller's open conversation, creating and queueing it if needed."""
    if principal.role == "student":
        student_id = principal.user_id
    else:
        student_id = payload.student_id if payload else None
        if not student_id:
            raise HTTPException(status_code=400, detail="student_id is required")
    with translate_errors():
        return await core.conversations.get_or_create(student_id)


@router.get("/api/conversations/{conversation_id}", response_model=schemas.Conversation)
async def get_conversation(
    conversation_id: UUID,
    after_seq: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.Conversation:
    """Conversation state; ``after_seq`` returns only the newer part of the log."""
    with translate_errors():
        conversation = await core.conversations.read(conversation_id, after_seq=after_seq)
    ensure_participant(principal, conversation)
    return conversation


@router.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=schemas.AppendMessageResponse,
)
@limiter.limit(MESSAGE_RATE_LIMIT)
async def append_message(
    request: Request,
    conversation_id: UUID,
    payload: schemas.AppendMessageRequest,
    principal: Principal = Depends(get_current_principal),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.AppendMessageResponse:
    if len(payload.text) > CHAT_MAX_MESSAGE_LENGTH:
        raise HTTPException(status_code=400, detail="Message too long")
    if principal.role == "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admins cannot post into conversations.",
        )
    with translate_errors():
        current = await core.conversations.get_summary(conversation_id)
        ensure_participant(principal, current)
        if principal.role == "counsellor" and current.counsellor_id != principal.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Claim the conversation before replying.",
            )
        message = await core.conversations.append(
            conversation_id, SenderRole(principal.role), principal.user_id, payload.text
        )
    return schemas.AppendMessageResponse(message=message)


@router.get("/api/conversations/{conversation_id}/events")
async def conversation_events(
    request: Request,
    conversation_id: UUID,
    principal: Principal = Depends(get_current_principal),
    core: ChatCore = Depends(get_chat_core),
):
    """Live conversation stream (SSE).

    Starts with a ``snapshot`` of the full conversation, then streams
    ``message`` and ``conversation`` events.
    """
    with translate_errors():
        current = await core.conversations.get_summary(conversation_id)
    ensure_participant(principal, current)

    subscription = core.broker.subscribe(conversation_room(conversation_id))
    try:
        with translate_errors():
            snapshot = await core.conversations.read(conversation_id)
        # A claim may have landed between the check above and the subscribe.
        ensure_participant(principal, snapshot)
    except HTTPException:
        subscription.close()
        raise
    return sse_response(
        event_stream(
            subscription,
            snapshot.model_dump(mode="json"),
            is_disconnected=request.is_disconnected,
            allow=still_participant(principal),
        )
    )


def still_participant(principal: Principal) -> Callable[[Event], bool] | None:
    """Per-event access check for a conversation stream.

    Students and admins keep access for the life of the conversation. A
    counsellor watching a queued conversation loses it as soon as a
    ``conversation`` event shows somebody else as the owner.
    """
    if principal.role != "counsellor":
        return None

    def allow(event: Event) -> bool:
        if event.type != "conversation":
            return True
        owner = (event.data.get("conversation") or {}).get("counsellor_id")
        return owner is None or owner == principal.user_id

    return allow


@router.get("/api/admin/conversations", response_model=schemas.ConversationList)
async def list_conversations(
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(require_role("admin")),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.ConversationList:
    """All sessions, active and completed, newest first."""
    with translate_errors():
        return await core.conversations.list_conversations(limit)
