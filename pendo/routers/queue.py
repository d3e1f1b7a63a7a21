"""Counsellor-facing routes: waiting queue, claim, end, escalation."""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from ..conversations import ChatCore, ClaimStatus
from ..conversations import schemas
from ..core.auth import Principal, require_role
from ..realtime import QUEUE_ROOM
from ..sse_utils import event_stream, sse_response
from ._common import get_chat_core, translate_errors

logger = logging.getLogger(__name__)

router = APIRouter(tags=["queue"])

staff_only = require_role("counsellor")


@router.get("/api/queue", response_model=schemas.QueueSnapshot)
async def list_queue(
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.QueueSnapshot:
    """Unassigned conversations, escalated and higher risk first."""
    with translate_errors():
        return await core.queue.snapshot()


@router.get("/api/queue/events")
async def queue_events(
    request: Request,
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
):
    """Live queue stream (SSE): a ``snapshot`` then ``queue`` upserts/removals."""
    subscription = core.broker.subscribe(QUEUE_ROOM)
    try:
        with translate_errors():
            snapshot = await core.queue.snapshot()
    except HTTPException:
        subscription.close()
        raise
    return sse_response(
        event_stream(
            subscription,
            snapshot.model_dump(mode="json"),
            is_disconnected=request.is_disconnected,
        )
    )


@router.post(
    "/api/conversations/{conversation_id}/claim",
    response_model=schemas.ClaimResponse,
    responses={409: {"model": schemas.ClaimResponse}},
)
async def claim_conversation(
    conversation_id: UUID,
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
):
    """Take ownership of a waiting conversation.

    Losing the race answers ``409`` with the current state so the client can
    drop the entry from its queue view.
    """
    with translate_errors():
        result = await core.router.claim(conversation_id, principal.user_id)
    if result.status is ClaimStatus.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    response = schemas.ClaimResponse(
        status=result.status.value, conversation=result.conversation
    )
    if result.status is ClaimStatus.CONFLICT:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=response.model_dump(mode="json"),
        )
    return response


@router.post("/api/conversations/{conversation_id}/end", response_model=schemas.EndResponse)
async def end_conversation(
    conversation_id: UUID,
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.EndResponse:
    with translate_errors():
        current = await core.conversations.get_summary(conversation_id)
        if principal.role != "admin" and current.counsellor_id not in (None, principal.user_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only the assigned counsellor can end this session.",
            )
        result = await core.router.end(conversation_id)
    return schemas.EndResponse(changed=result.changed, conversation=result.conversation)


@router.post(
    "/api/conversations/{conversation_id}/escalate",
    response_model=schemas.ConversationSummary,
)
async def escalate_conversation(
    conversation_id: UUID,
    payload: schemas.EscalationRequest,
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
) -> schemas.ConversationSummary:
    """Raise a conversation's risk level; lower levels are ignored."""
    with translate_errors():
        return await core.escalation.escalate(
            conversation_id,
            payload.risk_level,
            reason=payload.reason,
            escalate=payload.escalate,
        )


@router.post("/api/conversations/{conversation_id}/triage")
async def triage_conversation(
    conversation_id: UUID,
    payload: schemas.TriageEscalationRequest,
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
) -> dict:
    """Feed a triage outcome (score, self-harm flag, AI reply) to the escalation signal."""
    with translate_errors():
        summary, decision = await core.escalation.from_triage(conversation_id, payload)
        if summary is None:
            summary = await core.conversations.get_summary(conversation_id)
    return {
        "escalated": decision.should_escalate,
        "risk_level": decision.risk_level.value,
        "reason": decision.reason,
        "conversation": summary.model_dump(mode="json"),
    }


@router.get(
    "/api/counsellors/me/conversations",
    response_model=list[schemas.ConversationSummary],
)
async def my_conversations(
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
) -> list[schemas.ConversationSummary]:
    """Sessions the caller owns; a reconnecting dashboard re-subscribes to these."""
    with translate_errors():
        return await core.router.rejoin(principal.user_id)


@router.get(
    "/api/counsellors/stale-sessions",
    response_model=list[schemas.ConversationSummary],
)
async def stale_sessions(
    idle_minutes: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(staff_only),
    core: ChatCore = Depends(get_chat_core),
) -> list[schemas.ConversationSummary]:
    idle_for = timedelta(minutes=idle_minutes) if idle_minutes else None
    with translate_errors():
        stale = await core.router.list_stale_sessions(idle_for)
    if stale:
        logger.info("%d stale session(s) reported", len(stale))
    return stale
