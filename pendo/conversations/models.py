"""Domain enums and result types used by the session router."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .schemas import ConversationSummary


class RiskLevel(str, Enum):
    NONE = "none"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.rank)


_RISK_RANK = {RiskLevel.NONE: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class SessionState(str, Enum):
    """Lifecycle of a conversation: unassigned -> assigned -> ended."""

    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    ENDED = "ended"


class SenderRole(str, Enum):
    STUDENT = "student"
    COUNSELLOR = "counsellor"
    SYSTEM = "system"


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass
class ClaimResult:
    """Outcome of a claim attempt.

    Losing a race is a normal outcome: ``status`` is ``conflict`` and
    ``conversation`` holds the current state so the caller can drop the entry.
    """

    status: ClaimStatus
    conversation: "ConversationSummary | None" = None

    @property
    def claimed(self) -> bool:
        return self.status is ClaimStatus.CLAIMED


@dataclass
class EndResult:
    conversation: "ConversationSummary"
    changed: bool


@dataclass
class QueueChange:
    """A change to a conversation's assignment or priority.

    ``in_queue`` is false once the conversation has been claimed or ended;
    queue views must drop it.
    """

    conversation: "ConversationSummary"
    in_queue: bool
    reason: str

    @property
    def action(self) -> str:
        return "upsert" if self.in_queue else "remove"


@dataclass
class EscalationDecision:
    should_escalate: bool
    risk_level: RiskLevel = RiskLevel.NONE
    reason: str | None = None
