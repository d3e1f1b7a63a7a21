"""Conversation log, waiting queue and session routing."""

from . import schemas
from .core import ChatCore, build_chat_core
from .models import (
    ClaimResult,
    ClaimStatus,
    EndResult,
    QueueChange,
    RiskLevel,
    SenderRole,
    SessionState,
)
from .queue import QueueManager
from .repository import InMemoryConversationRepository, PostgresConversationRepository
from .service import ConversationService
from .session_router import SessionRouter

__all__ = [
    "ChatCore",
    "ClaimResult",
    "ClaimStatus",
    "ConversationService",
    "EndResult",
    "InMemoryConversationRepository",
    "PostgresConversationRepository",
    "QueueChange",
    "QueueManager",
    "RiskLevel",
    "SenderRole",
    "SessionRouter",
    "SessionState",
    "build_chat_core",
    "schemas",
]
