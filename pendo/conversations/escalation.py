"""Escalation signal: turns triage output into a one-way priority raise."""

from __future__ import annotations

import logging
from uuid import UUID

from . import schemas
from .models import EscalationDecision, RiskLevel
from .queue import QueueManager

logger = logging.getLogger(__name__)

# Emitted by the AI companion when a student mentions self-harm or suicide.
ESCALATION_MARKER = "[[ESCALATE_TO_HUMAN]]"

# PHQ-9 bands: 10-19 moderate to moderately severe, 20+ severe.
MEDIUM_SCORE = 10
HIGH_SCORE = 20


def detect_escalation(ai_reply: str | None) -> tuple[str, bool]:
    """Strip the escalation marker from an AI reply.

    Returns the cleaned reply and whether the marker was present.
    """

    if not ai_reply:
        return "", False
    found = ESCALATION_MARKER in ai_reply
    return ai_reply.replace(ESCALATION_MARKER, "").strip(), found


def risk_from_triage(score: int | None, flagged_for_self_harm: bool = False) -> RiskLevel:
    if flagged_for_self_harm:
        return RiskLevel.HIGH
    if score is None:
        return RiskLevel.NONE
    if score >= HIGH_SCORE:
        return RiskLevel.HIGH
    if score >= MEDIUM_SCORE:
        return RiskLevel.MEDIUM
    return RiskLevel.NONE


def evaluate_triage(request: schemas.TriageEscalationRequest) -> EscalationDecision:
    _, marker = detect_escalation(request.ai_reply)
    if marker:
        return EscalationDecision(True, RiskLevel.HIGH, reason="ai_marker")
    level = risk_from_triage(request.score, request.flagged_for_self_harm)
    if request.flagged_for_self_harm:
        return EscalationDecision(True, level, reason="self_harm_flag")
    if level is not RiskLevel.NONE:
        return EscalationDecision(True, level, reason="triage_score")
    return EscalationDecision(False)


class EscalationSignal:
    """Entry point for classifiers that detect a high-risk condition."""

    def __init__(self, queue: QueueManager) -> None:
        self._queue = queue

    async def escalate(
        self,
        conversation_id: UUID,
        risk_level: RiskLevel,
        *,
        reason: str | None = None,
        escalate: bool = False,
    ) -> schemas.ConversationSummary:
        return await self._queue.escalate(
            conversation_id, risk_level, reason=reason, escalate=escalate
        )

    async def from_triage(
        self, conversation_id: UUID, request: schemas.TriageEscalationRequest
    ) -> tuple[schemas.ConversationSummary | None, EscalationDecision]:
        decision = evaluate_triage(request)
        if not decision.should_escalate:
            return None, decision
        logger.info(
            "Triage escalation for %s: %s (%s)",
            conversation_id,
            decision.risk_level.value,
            decision.reason,
        )
        summary = await self.escalate(
            conversation_id,
            decision.risk_level,
            reason=decision.reason,
            escalate=decision.risk_level is RiskLevel.HIGH,
        )
        return summary, decision
