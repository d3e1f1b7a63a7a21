"""Datastore access for conversations and their message logs.

Every state transition is a single conditional statement so that concurrent
callers on different server instances cannot both win: the claim only assigns
when ``counsellor_id`` is still null, the open-conversation insert relies on a
partial unique index, and appends bump ``last_seq`` and insert the message in
one statement.
"""
from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol
from uuid import UUID, uuid4

import psycopg
from psycopg.rows import dict_row

from ..core.db import connect, with_retry
from ..realtime import conversation_room
from ..realtime.postgres import notify
from . import schemas
from .models import RiskLevel, SenderRole, SessionState

_CONVERSATION_COLUMNS = """
    id, student_id, counsellor_id, risk_level, escalated, escalation_reason,
    state, last_seq, created_at, assigned_at, ended_at, last_message_at
"""

_MESSAGE_COLUMNS = "id, conversation_id, seq, role, sender_id, body AS text, sent_at"

_QUEUE_ORDER = "escalated DESC, risk_rank(risk_level) DESC, created_at ASC, id ASC"


class ConversationRepository(Protocol):
    """Abstraction for persisting conversations."""

    # True when append_message also emits the ``message`` event.
    publishes_messages: bool

    async def get_or_create_open(
        self, student_id: str
    ) -> tuple[schemas.Conversation, bool]: ...

    async def get_conversation(
        self, conversation_id: UUID, *, after_seq: int = 0
    ) -> Optional[schemas.Conversation]: ...

    async def get_summary(
        self, conversation_id: UUID
    ) -> Optional[schemas.ConversationSummary]: ...

    async def append_message(
        self,
        conversation_id: UUID,
        role: SenderRole,
        sender_id: str,
        text: str,
    ) -> Optional[schemas.Message]: ...

    async def list_queue(self) -> List[schemas.ConversationSummary]: ...

    async def claim(
        self, conversation_id: UUID, counsellor_id: str
    ) -> Optional[schemas.ConversationSummary]: ...

    async def end(self, conversation_id: UUID) -> Optional[schemas.ConversationSummary]: ...

    async def raise_risk(
        self,
        conversation_id: UUID,
        risk_level: RiskLevel,
        *,
        escalate: bool,
        reason: Optional[str],
    ) -> Optional[schemas.ConversationSummary]: ...

    async def list_owned(self, counsellor_id: str) -> List[schemas.ConversationSummary]: ...

    async def list_idle_assigned(
        self, idle_since: datetime
    ) -> List[schemas.ConversationSummary]: ...

    async def list_conversations(self, limit: int = 50) -> List[schemas.ConversationSummary]: ...


def normalise_student_id(student_id: str) -> str:
    """Access codes are matched case-insensitively, e.g. ``nrb-1234`` -> ``NRB-1234``."""

    return student_id.strip().upper()


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`.

    Each call opens its own connection through ``connect_factory`` and commits
    when the statement succeeds; no transaction spans more than one call.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        connect_factory: Callable[[], Awaitable[psycopg.AsyncConnection]] | None = None,
        notify_messages: bool = False,
    ) -> None:
        self._database_url = database_url
        self._connect_factory = connect_factory
        # With the LISTEN/NOTIFY broker the message event is sent in the
        # append transaction so listeners see messages in log order.
        self.publishes_messages = notify_messages

    # Utility -----------------------------------------------------------------
    async def _connect(self) -> psycopg.AsyncConnection:
        if self._connect_factory is not None:
            return await self._connect_factory()
        return await connect(self._database_url)

    async def _fetchone(
        self, description: str, query: str, params: tuple[Any, ...]
    ) -> Optional[Dict[str, Any]]:
        async def run() -> Optional[Dict[str, Any]]:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(query, params)
                    return await cur.fetchone()

        return await with_retry(run, description=description)

    async def _fetchall(
        self, description: str, query: str, params: tuple[Any, ...]
    ) -> List[Dict[str, Any]]:
        async def run() -> List[Dict[str, Any]]:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(query, params)
                    return await cur.fetchall()

        return await with_retry(run, description=description)

    # Conversation log ---------------------------------------------------------
    async def get_or_create_open(
        self, student_id: str
    ) -> tuple[schemas.Conversation, bool]:
        student_id = normalise_student_id(student_id)
        # The open conversation found by the fallback SELECT can be ended
        # between the two statements, so try a few times.
        for _ in range(3):
            row = await self._fetchone(
                "create conversation",
                f"""
                INSERT INTO conversations (student_id)
                VALUES (%s)
                ON CONFLICT (student_id) WHERE state <> 'ended' DO NOTHING
                RETURNING {_CONVERSATION_COLUMNS}
                """,
                (student_id,),
            )
            if row:
                return schemas.Conversation(**row), True
            row = await self._fetchone(
                "find open conversation",
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE student_id = %s AND state <> 'ended'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (student_id,),
            )
            if row:
                existing = await self.get_conversation(row["id"])
                if existing is not None:
                    return existing, False
        raise RuntimeError(f"Could not resolve an open conversation for {student_id}")

    async def get_conversation(
        self, conversation_id: UUID, *, after_seq: int = 0
    ) -> Optional[schemas.Conversation]:
        async def run() -> Optional[schemas.Conversation]:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(
                        f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = %s",
                        (conversation_id,),
                    )
                    convo = await cur.fetchone()
                    if not convo:
                        return None
                    await cur.execute(
                        f"""
                        SELECT {_MESSAGE_COLUMNS} FROM conversation_messages
                        WHERE conversation_id = %s AND seq > %s
                        ORDER BY seq ASC
                        """,
                        (conversation_id, after_seq),
                    )
                    messages = [schemas.Message(**row) for row in await cur.fetchall()]
            return schemas.Conversation(**convo, messages=messages)

        return await with_retry(run, description="read conversation")

    async def get_summary(
        self, conversation_id: UUID
    ) -> Optional[schemas.ConversationSummary]:
        row = await self._fetchone(
            "read conversation state",
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = %s",
            (conversation_id,),
        )
        return schemas.ConversationSummary(**row) if row else None

    async def append_message(
        self,
        conversation_id: UUID,
        role: SenderRole,
        sender_id: str,
        text: str,
    ) -> Optional[schemas.Message]:
        async def run() -> Optional[schemas.Message]:
            async with await self._connect() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(
                        f"""
                        WITH bumped AS (
                            UPDATE conversations
                            SET last_seq = last_seq + 1,
                                last_message_at = clock_timestamp(),
                                updated_at = now()
                            WHERE id = %s AND state <> 'ended'
                            RETURNING id, last_seq, last_message_at
                        )
                        INSERT INTO conversation_messages
                            (conversation_id, seq, role, sender_id, body, sent_at)
                        SELECT id, last_seq, %s, %s, %s, last_message_at FROM bumped
                        RETURNING {_MESSAGE_COLUMNS}
                        """,
                        (conversation_id, SenderRole(role).value, sender_id, text),
                    )
                    row = await cur.fetchone()
                if not row:
                    return None
                message = schemas.Message(**row)
                if self.publishes_messages:
                    # Still holding the conversation row lock; commits on exit.
                    await notify(
                        conn,
                        conversation_room(conversation_id),
                        "message",
                        {"message": message.model_dump(mode="json")},
                    )
                return message

        return await with_retry(run, description="append message")

    async def list_conversations(self, limit: int = 50) -> List[schemas.ConversationSummary]:
        rows = await self._fetchall(
            "list conversations",
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (limit,),
        )
        return [schemas.ConversationSummary(**row) for row in rows]

    # Queue and routing ----------------------------------------------------------
    async def list_queue(self) -> List[schemas.ConversationSummary]:
        rows = await self._fetchall(
            "list queue",
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE state = 'unassigned'
            ORDER BY {_QUEUE_ORDER}
            """,
            (),
        )
        return [schemas.ConversationSummary(**row) for row in rows]

    async def claim(
        self, conversation_id: UUID, counsellor_id: str
    ) -> Optional[schemas.ConversationSummary]:
        row = await self._fetchone(
            "claim conversation",
            f"""
            UPDATE conversations
            SET counsellor_id = %s, state = 'assigned',
                assigned_at = clock_timestamp(), updated_at = now()
            WHERE id = %s AND counsellor_id IS NULL AND state = 'unassigned'
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            (counsellor_id, conversation_id),
        )
        return schemas.ConversationSummary(**row) if row else None

    async def end(self, conversation_id: UUID) -> Optional[schemas.ConversationSummary]:
        row = await self._fetchone(
            "end conversation",
            f"""
            UPDATE conversations
            SET state = 'ended', ended_at = clock_timestamp(), updated_at = now()
            WHERE id = %s AND state = 'assigned'
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            (conversation_id,),
        )
        return schemas.ConversationSummary(**row) if row else None

    async def raise_risk(
        self,
        conversation_id: UUID,
        risk_level: RiskLevel,
        *,
        escalate: bool,
        reason: Optional[str],
    ) -> Optional[schemas.ConversationSummary]:
        level = RiskLevel(risk_level).value
        row = await self._fetchone(
            "escalate conversation",
            f"""
            UPDATE conversations
            SET risk_level = CASE
                    WHEN risk_rank(%(level)s) > risk_rank(risk_level) THEN %(level)s
                    ELSE risk_level
                END,
                escalated = escalated OR %(escalate)s,
                escalation_reason = COALESCE(%(reason)s, escalation_reason),
                escalated_at = clock_timestamp(),
                updated_at = now()
            WHERE id = %(id)s
              AND (risk_rank(%(level)s) > risk_rank(risk_level)
                   OR (%(escalate)s AND NOT escalated))
            RETURNING {_CONVERSATION_COLUMNS}
            """,
            {
                "level": level,
                "escalate": escalate,
                "reason": reason,
                "id": conversation_id,
            },
        )
        return schemas.ConversationSummary(**row) if row else None

    async def list_owned(self, counsellor_id: str) -> List[schemas.ConversationSummary]:
        rows = await self._fetchall(
            "list owned conversations",
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE counsellor_id = %s AND state = 'assigned'
            ORDER BY assigned_at ASC
            """,
            (counsellor_id,),
        )
        return [schemas.ConversationSummary(**row) for row in rows]

    async def list_idle_assigned(
        self, idle_since: datetime
    ) -> List[schemas.ConversationSummary]:
        rows = await self._fetchall(
            "list idle sessions",
            f"""
            SELECT {_CONVERSATION_COLUMNS} FROM conversations
            WHERE state = 'assigned'
              AND GREATEST(assigned_at, COALESCE(last_message_at, assigned_at)) < %s
            ORDER BY assigned_at ASC
            """,
            (idle_since,),
        )
        return [schemas.ConversationSummary(**row) for row in rows]


class InMemoryConversationRepository:
    """Process-local repository used for tests and single-process development.

    Check-and-set sections never await, so under one event loop each
    operation is atomic just like the conditional statements above. State does
    not survive a restart; production deployments use Postgres.
    """

    publishes_messages = False

    def __init__(self) -> None:
        self._conversations: Dict[UUID, schemas.Conversation] = {}
        self._message_ids = itertools.count(1)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _summary(self, convo: schemas.Conversation) -> schemas.ConversationSummary:
        return convo.summary()

    async def get_or_create_open(
        self, student_id: str
    ) -> tuple[schemas.Conversation, bool]:
        student_id = normalise_student_id(student_id)
        open_ = [
            c
            for c in self._conversations.values()
            if c.student_id == student_id and c.state is not SessionState.ENDED
        ]
        if open_:
            latest = max(open_, key=lambda c: c.created_at)
            return latest.model_copy(deep=True), False
        convo = schemas.Conversation(
            id=uuid4(), student_id=student_id, created_at=self._now()
        )
        self._conversations[convo.id] = convo
        return convo.model_copy(deep=True), True

    async def get_conversation(
        self, conversation_id: UUID, *, after_seq: int = 0
    ) -> Optional[schemas.Conversation]:
        convo = self._conversations.get(conversation_id)
        if convo is None:
            return None
        copy = convo.model_copy(deep=True)
        copy.messages = [m for m in copy.messages if m.seq > after_seq]
        return copy

    async def get_summary(
        self, conversation_id: UUID
    ) -> Optional[schemas.ConversationSummary]:
        convo = self._conversations.get(conversation_id)
        return self._summary(convo) if convo is not None else None

    async def append_message(
        self,
        conversation_id: UUID,
        role: SenderRole,
        sender_id: str,
        text: str,
    ) -> Optional[schemas.Message]:
        convo = self._conversations.get(conversation_id)
        if convo is None or convo.state is SessionState.ENDED:
            return None
        now = self._now()
        convo.last_seq += 1
        convo.last_message_at = now
        message = schemas.Message(
            id=next(self._message_ids),
            conversation_id=conversation_id,
            seq=convo.last_seq,
            role=SenderRole(role),
            sender_id=sender_id,
            text=text,
            sent_at=now,
        )
        convo.messages.append(message)
        return message.model_copy()

    async def list_conversations(self, limit: int = 50) -> List[schemas.ConversationSummary]:
        ordered = sorted(
            self._conversations.values(), key=lambda c: c.created_at, reverse=True
        )
        return [self._summary(c) for c in ordered[:limit]]

    async def list_queue(self) -> List[schemas.ConversationSummary]:
        # Dict order is insertion order, so the stable sort keeps FIFO within a tier.
        waiting = [
            c for c in self._conversations.values() if c.state is SessionState.UNASSIGNED
        ]
        waiting.sort(key=lambda c: (not c.escalated, -c.risk_level.rank, c.created_at))
        return [self._summary(c) for c in waiting]

    async def claim(
        self, conversation_id: UUID, counsellor_id: str
    ) -> Optional[schemas.ConversationSummary]:
        convo = self._conversations.get(conversation_id)
        if (
            convo is None
            or convo.counsellor_id is not None
            or convo.state is not SessionState.UNASSIGNED
        ):
            return None
        convo.counsellor_id = counsellor_id
        convo.state = SessionState.ASSIGNED
        convo.assigned_at = self._now()
        return self._summary(convo)

    async def end(self, conversation_id: UUID) -> Optional[schemas.ConversationSummary]:
        convo = self._conversations.get(conversation_id)
        if convo is None or convo.state is not SessionState.ASSIGNED:
            return None
        convo.state = SessionState.ENDED
        convo.ended_at = self._now()
        return self._summary(convo)

    async def raise_risk(
        self,
        conversation_id: UUID,
        risk_level: RiskLevel,
        *,
        escalate: bool,
        reason: Optional[str],
    ) -> Optional[schemas.ConversationSummary]:
        convo = self._conversations.get(conversation_id)
        if convo is None:
            return None
        level = RiskLevel(risk_level)
        raises = level.rank > convo.risk_level.rank
        flags = escalate and not convo.escalated
        if not (raises or flags):
            return None
        convo.risk_level = RiskLevel.highest(convo.risk_level, level)
        convo.escalated = convo.escalated or escalate
        if reason is not None:
            convo.escalation_reason = reason
        return self._summary(convo)

    async def list_owned(self, counsellor_id: str) -> List[schemas.ConversationSummary]:
        owned = [
            c
            for c in self._conversations.values()
            if c.counsellor_id == counsellor_id and c.state is SessionState.ASSIGNED
        ]
        owned.sort(key=lambda c: c.assigned_at or c.created_at)
        return [self._summary(c) for c in owned]

    async def list_idle_assigned(
        self, idle_since: datetime
    ) -> List[schemas.ConversationSummary]:
        idle = []
        for convo in self._conversations.values():
            if convo.state is not SessionState.ASSIGNED or convo.assigned_at is None:
                continue
            last_activity = max(convo.assigned_at, convo.last_message_at or convo.assigned_at)
            if last_activity < idle_since:
                idle.append(convo)
        idle.sort(key=lambda c: c.assigned_at)
        return [self._summary(c) for c in idle]
