"""Shared plumbing for the API routers."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, Request, status
from slowapi import Limiter

from ..conversations import ChatCore
from ..conversations.repository import normalise_student_id
from ..conversations.schemas import ConversationSummary
from ..core.auth import Principal
from ..core.errors import (
    ConversationConflictError,
    ConversationNotFoundError,
    TransientStoreError,
)

logger = logging.getLogger(__name__)

MESSAGE_RATE_LIMIT = os.getenv("MESSAGE_RATE_LIMIT", "30/minute")


def get_client_ip(request: Request) -> str:
    """Prefer the first ``X-Forwarded-For`` hop, otherwise the socket peer."""

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)


def get_chat_core(request: Request) -> ChatCore:
    core = getattr(request.app.state, "chat_core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Chat core is not initialised")
    return core


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map the core's error taxonomy onto HTTP responses."""

    try:
        yield
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConversationConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except TransientStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
            headers={"Retry-After": "2"},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def ensure_participant(principal: Principal, conversation: ConversationSummary) -> None:
    """Students see only their own conversation.

    Counsellors see conversations they own and those still waiting in the
    queue; admins see everything.
    """

    if principal.role == "admin":
        return
    if principal.role == "student":
        if normalise_student_id(principal.user_id) == conversation.student_id:
            return
    elif principal.role == "counsellor":
        if conversation.in_queue or conversation.counsellor_id == principal.user_id:
            return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Not a participant of this conversation.",
    )
