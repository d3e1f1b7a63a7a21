"""Session routing: counsellor claims, session end and reconnect.

A conversation moves ``unassigned -> assigned -> ended`` and never back. The
only contended field is ``counsellor_id``; it changes through the repository's
conditional claim, so a broadcast of a waiting student to every counsellor is
safe: whoever's claim lands first owns the session and everyone else gets a
conflict result.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from uuid import UUID

from ..core.errors import (
    ConversationConflictError,
    ConversationNotFoundError,
    TransientStoreError,
)
from ..realtime import Broker, conversation_room
from . import schemas
from .models import ClaimResult, ClaimStatus, EndResult, SenderRole, SessionState
from .queue import QueueManager
from .repository import ConversationRepository
from .service import ConversationService

logger = logging.getLogger(__name__)

JOINED_TEXT = "A counsellor has joined the conversation."


class SessionRouter:
    def __init__(
        self,
        repository: ConversationRepository,
        broker: Broker,
        queue: QueueManager,
        conversations: ConversationService,
    ) -> None:
        self._repository = repository
        self._broker = broker
        self._queue = queue
        self._conversations = conversations

    async def claim(self, conversation_id: UUID, counsellor_id: str) -> ClaimResult:
        """Assign ``conversation_id`` to ``counsellor_id`` if nobody holds it yet."""

        claimed = await self._repository.claim(conversation_id, counsellor_id)
        if claimed is None:
            current = await self._repository.get_summary(conversation_id)
            if current is None:
                return ClaimResult(ClaimStatus.NOT_FOUND)
            if (
                current.state is SessionState.ASSIGNED
                and current.counsellor_id == counsellor_id
            ):
                # Retry of a claim this counsellor already won.
                return ClaimResult(ClaimStatus.CLAIMED, current)
            logger.info(
                "Claim on %s by %s lost (state=%s, owner=%s)",
                conversation_id,
                counsellor_id,
                current.state.value,
                current.counsellor_id,
            )
            return ClaimResult(ClaimStatus.CONFLICT, current)

        logger.info("Conversation %s claimed by %s", conversation_id, counsellor_id)
        # The assignment is committed; failures below must not report a loss.
        try:
            await self._queue.notify(claimed, reason="claimed")
            await self._broker.publish(
                conversation_room(conversation_id),
                "conversation",
                {"conversation": claimed.model_dump(mode="json"), "reason": "claimed"},
            )
            await self._conversations.append(
                conversation_id, SenderRole.SYSTEM, "system", JOINED_TEXT
            )
        except (TransientStoreError, ConversationConflictError) as exc:
            logger.warning(
                "Conversation %s claimed by %s but announcing it failed: %s",
                conversation_id,
                counsellor_id,
                exc,
            )
        return ClaimResult(ClaimStatus.CLAIMED, claimed)

    async def end(self, conversation_id: UUID) -> EndResult:
        """Close an assigned session. Ending an ended session is a no-op.

        Raises:
            ConversationNotFoundError: unknown conversation.
            ConversationConflictError: the conversation was never claimed.
        """

        ended = await self._repository.end(conversation_id)
        if ended is None:
            current = await self._repository.get_summary(conversation_id)
            if current is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            if current.state is SessionState.ENDED:
                return EndResult(conversation=current, changed=False)
            raise ConversationConflictError(
                f"Conversation {conversation_id} is {current.state.value}; "
                "only assigned sessions can end"
            )

        logger.info("Conversation %s ended by %s", conversation_id, ended.counsellor_id)
        await self._broker.publish(
            conversation_room(conversation_id),
            "conversation",
            {"conversation": ended.model_dump(mode="json"), "reason": "ended"},
        )
        return EndResult(conversation=ended, changed=True)

    async def rejoin(self, counsellor_id: str) -> list[schemas.ConversationSummary]:
        """Conversations a reconnecting counsellor owns and must re-subscribe to.

        Always read from the store; buffered events are not trusted across a
        reconnect.
        """

        owned = await self._repository.list_owned(counsellor_id)
        logger.info("Counsellor %s rejoined %d conversation(s)", counsellor_id, len(owned))
        return owned

    async def list_stale_sessions(
        self, idle_for: timedelta | None = None
    ) -> list[schemas.ConversationSummary]:
        """Assigned sessions with no activity for ``idle_for``.

        Reported only: ownership is never taken away automatically.
        """

        if idle_for is None:
            idle_for = timedelta(minutes=int(os.getenv("STALE_SESSION_MINUTES", "30")))
        cutoff = datetime.now(timezone.utc) - idle_for
        return await self._repository.list_idle_assigned(cutoff)
