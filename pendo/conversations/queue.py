"""Waiting-queue view and priority changes."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from uuid import UUID

from ..core.errors import ConversationNotFoundError
from ..realtime import QUEUE_ROOM, Broker, conversation_room
from . import schemas
from .models import QueueChange, RiskLevel
from .repository import ConversationRepository

logger = logging.getLogger(__name__)

QueueListener = Callable[[QueueChange], Awaitable[None] | None]


class QueueManager:
    """Tracks conversations waiting for a counsellor.

    The queue is never stored: it is every unassigned conversation, ordered by
    ``(escalated, risk level, created_at)`` and recomputed on each read.
    """

    def __init__(self, repository: ConversationRepository, broker: Broker) -> None:
        self._repository = repository
        self._broker = broker
        self._listeners: list[QueueListener] = []

    async def list_queue(self) -> list[schemas.ConversationSummary]:
        return await self._repository.list_queue()

    async def snapshot(self) -> schemas.QueueSnapshot:
        items = await self.list_queue()
        return schemas.QueueSnapshot(
            items=items, total=len(items), generated_at=datetime.now(timezone.utc)
        )

    def on_queue_change(self, callback: QueueListener) -> Callable[[], None]:
        """Register ``callback`` for queue changes; returns an unsubscribe function."""

        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def escalate(
        self,
        conversation_id: UUID,
        risk_level: RiskLevel,
        *,
        reason: str | None = None,
        escalate: bool = False,
    ) -> schemas.ConversationSummary:
        """Raise a conversation's priority; never lowers it.

        Reaching ``high`` always sets the escalated flag. Calls with the same or
        a lower level are no-ops that return the current state.
        """

        level = RiskLevel(risk_level)
        flag = escalate or level is RiskLevel.HIGH
        updated = await self._repository.raise_risk(
            conversation_id, level, escalate=flag, reason=reason
        )
        if updated is None:
            current = await self._repository.get_summary(conversation_id)
            if current is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            return current

        logger.info(
            "Conversation %s escalated to %s (escalated=%s, reason=%s)",
            conversation_id,
            updated.risk_level.value,
            updated.escalated,
            reason,
        )
        await self._broker.publish(
            conversation_room(conversation_id),
            "conversation",
            {"conversation": updated.model_dump(mode="json"), "reason": "escalated"},
        )
        await self.notify(updated, reason="escalated")
        return updated

    async def notify(self, conversation: schemas.ConversationSummary, *, reason: str) -> None:
        """Publish a queue change and run the registered listeners.

        Claimed and ended conversations go out as removals so they vanish from
        every counsellor's view, including the one that claimed it.
        """

        change = QueueChange(
            conversation=conversation, in_queue=conversation.in_queue, reason=reason
        )
        await self._broker.publish(
            QUEUE_ROOM,
            "queue",
            {
                "action": change.action,
                "reason": reason,
                "conversation": conversation.model_dump(mode="json"),
            },
        )
        for listener in list(self._listeners):
            try:
                result = listener(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Queue listener failed for %s", conversation.id)
