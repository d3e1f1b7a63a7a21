import asyncio

import pytest

from pendo.conversations import SenderRole, SessionState
from pendo.core.errors import ConversationConflictError, ConversationNotFoundError
from pendo.realtime import conversation_room


def test_get_or_create_reuses_open_conversation(core):
    async def scenario():
        first = await core.conversations.get_or_create("nrb-1234")
        second = await core.conversations.get_or_create("  NRB-1234 ")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.id == second.id
    assert first.student_id == "NRB-1234"
    assert first.state is SessionState.UNASSIGNED
    assert first.counsellor_id is None
    assert first.messages == []


def test_concurrent_get_or_create_creates_one_conversation(core):
    async def scenario():
        return await asyncio.gather(
            *(core.conversations.get_or_create("MSA-0001") for _ in range(10))
        )

    results = asyncio.run(scenario())

    assert len({c.id for c in results}) == 1
    assert len(asyncio.run(core.queue.list_queue())) == 1


def test_get_or_create_after_end_starts_new_conversation(core):
    async def scenario():
        first = await core.conversations.get_or_create("NRB-1")
        await core.router.claim(first.id, "counsellor-a")
        await core.router.end(first.id)
        second = await core.conversations.get_or_create("NRB-1")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.id != second.id
    assert second.state is SessionState.UNASSIGNED


def test_get_or_create_rejects_blank_student(core):
    with pytest.raises(ValueError):
        asyncio.run(core.conversations.get_or_create("   "))


def test_append_preserves_call_order_across_participants(core):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-2")
        await core.router.claim(convo.id, "counsellor-a")
        await core.conversations.append(convo.id, SenderRole.STUDENT, "NRB-2", "one")
        await core.conversations.append(convo.id, "counsellor", "counsellor-a", "two")
        await core.conversations.append(convo.id, SenderRole.STUDENT, "NRB-2", "three")
        return await core.conversations.read(convo.id)

    convo = asyncio.run(scenario())

    texts = [m.text for m in convo.messages]
    assert texts == [
        "A counsellor has joined the conversation.",
        "one",
        "two",
        "three",
    ]
    assert [m.seq for m in convo.messages] == [1, 2, 3, 4]
    assert [m.role for m in convo.messages] == [
        SenderRole.SYSTEM,
        SenderRole.STUDENT,
        SenderRole.COUNSELLOR,
        SenderRole.STUDENT,
    ]
    assert convo.last_seq == 4


def test_concurrent_appends_get_distinct_sequence_numbers(core):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-3")
        await asyncio.gather(
            *(
                core.conversations.append(convo.id, SenderRole.STUDENT, "NRB-3", f"m{i}")
                for i in range(20)
            )
        )
        return await core.conversations.read(convo.id)

    convo = asyncio.run(scenario())

    assert [m.seq for m in convo.messages] == list(range(1, 21))


def test_blank_text_is_a_no_op(core, broker):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-4")
        sub = broker.subscribe(conversation_room(convo.id))
        result = await core.conversations.append(
            convo.id, SenderRole.STUDENT, "NRB-4", " \n\t "
        )
        after = await core.conversations.read(convo.id)
        return result, after, broker.subscriber_count(conversation_room(convo.id)), sub

    result, after, subscribers, sub = asyncio.run(scenario())

    assert result is None
    assert after.messages == []
    assert subscribers == 1
    assert sub._queue.empty()


def test_append_trims_text_and_publishes_event(core, broker):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-5")
        sub = broker.subscribe(conversation_room(convo.id))
        message = await core.conversations.append(
            convo.id, SenderRole.STUDENT, "NRB-5", "  I need help  "
        )
        event = await asyncio.wait_for(sub.get(), timeout=1)
        return message, event

    message, event = asyncio.run(scenario())

    assert message.text == "I need help"
    assert event.type == "message"
    assert event.seq == 1
    assert event.data["message"]["text"] == "I need help"
    assert event.data["message"]["seq"] == message.seq


def test_append_to_ended_conversation_is_a_conflict(core):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-6")
        await core.router.claim(convo.id, "counsellor-a")
        await core.router.end(convo.id)
        await core.conversations.append(convo.id, SenderRole.STUDENT, "NRB-6", "hello?")

    with pytest.raises(ConversationConflictError):
        asyncio.run(scenario())


def test_unknown_conversation_is_not_found(core):
    from uuid import uuid4

    with pytest.raises(ConversationNotFoundError):
        asyncio.run(core.conversations.read(uuid4()))
    with pytest.raises(ConversationNotFoundError):
        asyncio.run(
            core.conversations.append(uuid4(), SenderRole.STUDENT, "NRB-7", "hi")
        )


def test_read_after_seq_returns_tail(core):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-8")
        for text in ("a", "b", "c"):
            await core.conversations.append(convo.id, SenderRole.STUDENT, "NRB-8", text)
        return await core.conversations.read(convo.id, after_seq=1)

    tail = asyncio.run(scenario())

    assert [m.text for m in tail.messages] == ["b", "c"]
    assert tail.last_seq == 3


def test_list_conversations_newest_first(core):
    async def scenario():
        first = await core.conversations.get_or_create("A-1")
        await asyncio.sleep(0.001)
        second = await core.conversations.get_or_create("A-2")
        listing = await core.conversations.list_conversations()
        return first, second, listing

    first, second, listing = asyncio.run(scenario())

    assert listing.total == 2
    assert [c.id for c in listing.items] == [second.id, first.id]


def test_messages_since_for_resuming_clients(core):
    async def scenario():
        convo = await core.conversations.get_or_create("NRB-9")
        for text in ("first", "second"):
            await core.conversations.append(convo.id, SenderRole.STUDENT, "NRB-9", text)
        return (
            await core.conversations.messages_since(convo.id, 0),
            await core.conversations.messages_since(convo.id, 2),
        )

    everything, nothing = asyncio.run(scenario())

    assert [m.seq for m in everything] == [1, 2]
    assert nothing == []
