import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from pendo.conversations import ClaimStatus, SenderRole, SessionState
from pendo.conversations.session_router import JOINED_TEXT
from pendo.core.errors import ConversationConflictError, ConversationNotFoundError
from pendo.realtime import conversation_room


@pytest.mark.parametrize("claimers", [2, 5, 25])
def test_concurrent_claims_have_exactly_one_winner(core, claimers):
    async def scenario():
        convo = await core.conversations.get_or_create("R-1")
        results = await asyncio.gather(
            *(core.router.claim(convo.id, f"counsellor-{i}") for i in range(claimers))
        )
        return convo, results, await core.conversations.read(convo.id)

    convo, results, final = asyncio.run(scenario())

    winners = [r for r in results if r.claimed]
    losers = [r for r in results if r.status is ClaimStatus.CONFLICT]
    assert len(winners) == 1
    assert len(losers) == claimers - 1
    assert final.counsellor_id == winners[0].conversation.counsellor_id
    assert final.state is SessionState.ASSIGNED
    # Losers see who won so they can drop the entry.
    assert all(r.conversation.counsellor_id == final.counsellor_id for r in losers)
    joined = [m for m in final.messages if m.role is SenderRole.SYSTEM]
    assert [m.text for m in joined] == [JOINED_TEXT]


def test_claim_unknown_conversation(core):
    result = asyncio.run(core.router.claim(uuid4(), "counsellor-a"))

    assert result.status is ClaimStatus.NOT_FOUND
    assert result.conversation is None


def test_claim_ended_conversation_is_a_conflict(core):
    async def scenario():
        convo = await core.conversations.get_or_create("R-2")
        await core.router.claim(convo.id, "counsellor-a")
        await core.router.end(convo.id)
        return await core.router.claim(convo.id, "counsellor-b")

    result = asyncio.run(scenario())

    assert result.status is ClaimStatus.CONFLICT
    assert result.conversation.state is SessionState.ENDED
    assert result.conversation.counsellor_id == "counsellor-a"


def test_claim_publishes_conversation_event(core, broker):
    async def scenario():
        convo = await core.conversations.get_or_create("R-3")
        sub = broker.subscribe(conversation_room(convo.id))
        await core.router.claim(convo.id, "counsellor-a")
        return [await asyncio.wait_for(sub.get(), timeout=1) for _ in range(2)]

    assigned, joined = asyncio.run(scenario())

    assert assigned.type == "conversation"
    assert assigned.data["reason"] == "claimed"
    assert assigned.data["conversation"]["state"] == "assigned"
    assert joined.type == "message"
    assert joined.data["message"]["role"] == "system"


def test_end_is_idempotent(core):
    async def scenario():
        convo = await core.conversations.get_or_create("R-4")
        await core.router.claim(convo.id, "counsellor-a")
        first = await core.router.end(convo.id)
        second = await core.router.end(convo.id)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.changed is True
    assert second.changed is False
    assert first.conversation.state is SessionState.ENDED
    assert second.conversation.state is SessionState.ENDED
    assert second.conversation.ended_at == first.conversation.ended_at


def test_end_unassigned_conversation_is_a_conflict(core):
    async def scenario():
        convo = await core.conversations.get_or_create("R-5")
        await core.router.end(convo.id)

    with pytest.raises(ConversationConflictError):
        asyncio.run(scenario())


def test_end_unknown_conversation(core):
    with pytest.raises(ConversationNotFoundError):
        asyncio.run(core.router.end(uuid4()))


def test_rejoin_lists_owned_assigned_sessions(core):
    async def scenario():
        mine = await core.conversations.get_or_create("R-6")
        also_mine = await core.conversations.get_or_create("R-7")
        finished = await core.conversations.get_or_create("R-8")
        other = await core.conversations.get_or_create("R-9")
        await core.conversations.get_or_create("R-10")
        await core.router.claim(mine.id, "counsellor-a")
        await core.router.claim(also_mine.id, "counsellor-a")
        await core.router.claim(finished.id, "counsellor-a")
        await core.router.claim(other.id, "counsellor-b")
        await core.router.end(finished.id)
        return mine, also_mine, await core.router.rejoin("counsellor-a")

    mine, also_mine, owned = asyncio.run(scenario())

    assert [c.id for c in owned] == [mine.id, also_mine.id]
    assert all(c.state is SessionState.ASSIGNED for c in owned)


def test_stale_sessions_are_reported_not_released(core, repository):
    async def scenario():
        idle = await core.conversations.get_or_create("R-11")
        active = await core.conversations.get_or_create("R-12")
        await core.router.claim(idle.id, "counsellor-a")
        await core.router.claim(active.id, "counsellor-b")
        long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
        stored = repository._conversations[idle.id]
        stored.assigned_at = long_ago
        stored.last_message_at = long_ago
        stale = await core.router.list_stale_sessions(timedelta(minutes=30))
        after = await core.conversations.read(idle.id)
        return idle, stale, after

    idle, stale, after = asyncio.run(scenario())

    assert [c.id for c in stale] == [idle.id]
    assert after.counsellor_id == "counsellor-a"
    assert after.state is SessionState.ASSIGNED


def test_stale_sessions_default_window_from_env(core, monkeypatch):
    monkeypatch.setenv("STALE_SESSION_MINUTES", "45")

    async def scenario():
        convo = await core.conversations.get_or_create("R-13")
        await core.router.claim(convo.id, "counsellor-a")
        return await core.router.list_stale_sessions()

    assert asyncio.run(scenario()) == []


def test_repeated_claim_by_the_owner_is_still_claimed(core):
    async def scenario():
        convo = await core.conversations.get_or_create("R-9")
        first = await core.router.claim(convo.id, "counsellor-a")
        again = await core.router.claim(convo.id, "counsellor-a")
        other = await core.router.claim(convo.id, "counsellor-b")
        return first, again, other, await core.conversations.read(convo.id)

    first, again, other, final = asyncio.run(scenario())

    assert first.status is ClaimStatus.CLAIMED
    assert again.status is ClaimStatus.CLAIMED
    assert again.conversation.counsellor_id == "counsellor-a"
    assert other.status is ClaimStatus.CONFLICT
    # The join announcement is not repeated.
    assert [m.text for m in final.messages if m.role is SenderRole.SYSTEM] == [JOINED_TEXT]


def test_claim_is_kept_when_announcing_it_fails(repository, broker, monkeypatch):
    from pendo.conversations import build_chat_core
    from pendo.core.errors import TransientStoreError

    core = build_chat_core(repository, broker)
    original_publish = broker.publish

    async def flaky_publish(room, type, data):
        if type == "conversation":
            raise TransientStoreError("publish conversation failed")
        return await original_publish(room, type, data)

    monkeypatch.setattr(broker, "publish", flaky_publish)

    async def scenario():
        convo = await core.conversations.get_or_create("R-10")
        result = await core.router.claim(convo.id, "counsellor-a")
        return result, await core.conversations.get_summary(convo.id)

    result, summary = asyncio.run(scenario())

    assert result.status is ClaimStatus.CLAIMED
    assert summary.state is SessionState.ASSIGNED
    assert summary.counsellor_id == "counsellor-a"
