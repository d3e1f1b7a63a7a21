"""Conversation log: entry point for students and the append-only message store."""

from __future__ import annotations

import logging
from uuid import UUID

from ..core.errors import ConversationConflictError, ConversationNotFoundError
from ..realtime import Broker, conversation_room
from . import schemas
from .models import SenderRole
from .queue import QueueManager
from .repository import ConversationRepository

logger = logging.getLogger(__name__)


class ConversationService:
    """Coordinates conversation persistence and live delivery of new messages."""

    def __init__(
        self,
        repository: ConversationRepository,
        broker: Broker,
        queue: QueueManager,
    ) -> None:
        self._repository = repository
        self._broker = broker
        self._queue = queue

    # ------------------------------------------------------------------
    # Entry point

    async def get_or_create(self, student_id: str) -> schemas.Conversation:
        """Return the student's open conversation, creating one when needed.

        A new conversation is announced to every counsellor watching the queue;
        which of them gets it is decided by the claim.
        """

        if not student_id or not student_id.strip():
            raise ValueError("student_id is required")
        conversation, created = await self._repository.get_or_create_open(student_id)
        if created:
            logger.info("Conversation %s opened and queued", conversation.id)
            await self._queue.notify(conversation.summary(), reason="created")
        return conversation

    # ------------------------------------------------------------------
    # Log

    async def append(
        self,
        conversation_id: UUID,
        role: SenderRole | str,
        sender_id: str,
        text: str,
    ) -> schemas.Message | None:
        """Append a message and push it to the conversation's room.

        Blank text is ignored and returns ``None``. Appending to an ended
        conversation raises :class:`ConversationConflictError`.
        """

        body = (text or "").strip()
        if not body:
            return None
        message = await self._repository.append_message(
            conversation_id, SenderRole(role), sender_id, body
        )
        if message is None:
            current = await self._repository.get_summary(conversation_id)
            if current is None:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
            raise ConversationConflictError(
                f"Conversation {conversation_id} has ended; messages are closed"
            )
        if not self._repository.publishes_messages:
            await self._broker.publish(
                conversation_room(conversation_id),
                "message",
                {"message": message.model_dump(mode="json")},
            )
        return message

    async def read(self, conversation_id: UUID, *, after_seq: int = 0) -> schemas.Conversation:
        """Full conversation state; ``after_seq`` limits the log to newer messages."""

        conversation = await self._repository.get_conversation(
            conversation_id, after_seq=after_seq
        )
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def messages_since(
        self, conversation_id: UUID, after_seq: int
    ) -> list[schemas.Message]:
        """Tail of the log for a client resuming from ``after_seq``."""

        conversation = await self.read(conversation_id, after_seq=after_seq)
        return conversation.messages

    async def get_summary(self, conversation_id: UUID) -> schemas.ConversationSummary:
        summary = await self._repository.get_summary(conversation_id)
        if summary is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return summary

    async def list_conversations(self, limit: int = 50) -> schemas.ConversationList:
        items = await self._repository.list_conversations(limit=limit)
        return schemas.ConversationList(items=items, total=len(items))
