"""Pydantic schemas for the conversation and queue APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from .models import RiskLevel, SenderRole, SessionState


class Message(BaseModel):
    id: int
    conversation_id: UUID
    seq: int
    role: SenderRole
    sender_id: str
    text: str
    sent_at: datetime


class ConversationSummary(BaseModel):
    id: UUID
    student_id: str
    counsellor_id: str | None = None
    risk_level: RiskLevel = RiskLevel.NONE
    escalated: bool = False
    escalation_reason: str | None = None
    state: SessionState = SessionState.UNASSIGNED
    last_seq: int = 0
    created_at: datetime
    assigned_at: datetime | None = None
    ended_at: datetime | None = None
    last_message_at: datetime | None = None

    @property
    def in_queue(self) -> bool:
        return self.state is SessionState.UNASSIGNED


class Conversation(ConversationSummary):
    messages: list[Message] = Field(default_factory=list)

    def summary(self) -> ConversationSummary:
        return ConversationSummary(**self.model_dump(exclude={"messages"}))


class ConversationList(BaseModel):
    items: list[ConversationSummary]
    total: int


class QueueSnapshot(BaseModel):
    items: list[ConversationSummary]
    total: int
    generated_at: datetime


class StartConversationRequest(BaseModel):
    """Student entry point; staff may open a conversation on a student's behalf."""

    student_id: str | None = None


class AppendMessageRequest(BaseModel):
    text: str


class AppendMessageResponse(BaseModel):
    # ``None`` when the text was blank and nothing was appended.
    message: Message | None = None


class ClaimResponse(BaseModel):
    status: str
    conversation: ConversationSummary | None = None


class EndResponse(BaseModel):
    changed: bool
    conversation: ConversationSummary


class EscalationRequest(BaseModel):
    risk_level: RiskLevel = RiskLevel.HIGH
    reason: str | None = None
    escalate: bool = False


class TriageEscalationRequest(BaseModel):
    """Raw triage output; converted to an escalation by the signal."""

    score: int | None = None
    flagged_for_self_harm: bool = False
    ai_reply: str | None = None


class VideoSessionNotification(BaseModel):
    counsellor_name: str | None = None
    student_email: str | None = None
    date: str | None = None
    time: str | None = None
    meet_link: str
    extra: dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
