"""Wiring of the conversation log, queue, router and escalation signal."""

from __future__ import annotations

from dataclasses import dataclass

from ..realtime import Broker
from .escalation import EscalationSignal
from .queue import QueueManager
from .repository import ConversationRepository
from .service import ConversationService
from .session_router import SessionRouter


@dataclass
class ChatCore:
    repository: ConversationRepository
    broker: Broker
    queue: QueueManager
    conversations: ConversationService
    router: SessionRouter
    escalation: EscalationSignal


def build_chat_core(repository: ConversationRepository, broker: Broker) -> ChatCore:
    queue = QueueManager(repository, broker)
    conversations = ConversationService(repository, broker, queue)
    router = SessionRouter(repository, broker, queue, conversations)
    return ChatCore(
        repository=repository,
        broker=broker,
        queue=queue,
        conversations=conversations,
        router=router,
        escalation=EscalationSignal(queue),
    )
