"""Chat session tests — history + live feed, ordering, teardown.

Learn: The rendered message list must be exactly the conversation's
messages, each once, ordered by (created_at, id), no matter how the
history query and the live feed interleave. Live changes are injected
straight into the feed where a test needs control over order.
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from switchboard.db.models import as_utc, utcnow
from switchboard.errors import InvalidTransition
from switchboard.realtime.feed import INSERT, Change
from switchboard.services.chat_session import ChatSession
from switchboard.services.conversation_store import ConversationStore
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.session_context import SessionContext, StaffIdentity


@pytest.fixture
async def agent(make_agent):
    return await make_agent()


@pytest.fixture
def context(agent):
    return SessionContext(
        agent=StaffIdentity(id=agent.id, name=agent.name, email=agent.email)
    )


@pytest.fixture
def chat(context, sessions, feed):
    return ChatSession(context, sessions, feed)


async def _post(sessions, conversation_id, sender_id, text):
    async with sessions() as db:
        msg = await ConversationStore(db).add_message(conversation_id, sender_id, text)
        await db.commit()
        return msg


def _live(conversation_id, msg_id, created_at, text="live", sender_id=None):
    return Change(
        table="messages",
        event=INSERT,
        record={
            "id": msg_id,
            "conversation_id": str(conversation_id),
            "sender_id": str(sender_id or uuid.uuid4()),
            "text": text,
            "created_at": created_at.isoformat(),
        },
        origin="test",
    )


# ═══════════════════════════════════════════════════════════
# History + live
# ═══════════════════════════════════════════════════════════


async def test_open_loads_history_then_follows_live(chat, sessions, feed, make_conversation):
    conv = await make_conversation()
    client = conv.client_id
    await _post(sessions, conv.id, client, "hi")
    await _post(sessions, conv.id, client, "anyone there?")

    await chat.open(conv.id)
    assert [m["text"] for m in chat.items] == ["hi", "anyone there?"]

    await _post(sessions, conv.id, client, "hello?")
    await feed.drain()
    assert [m["text"] for m in chat.items] == ["hi", "anyone there?", "hello?"]


async def test_other_conversations_are_ignored(chat, sessions, feed, make_conversation):
    mine = await make_conversation()
    other = await make_conversation()
    await chat.open(mine.id)

    await _post(sessions, other.id, other.client_id, "not for you")
    await feed.drain()
    assert chat.items == []


async def test_duplicate_delivery_renders_once(chat, sessions, feed, make_conversation):
    conv = await make_conversation()
    msg = await _post(sessions, conv.id, conv.client_id, "once")
    await chat.open(conv.id)

    feed.publish(Change(table="messages", event=INSERT, record=msg.to_dict()))
    feed.publish(Change(table="messages", event=INSERT, record=msg.to_dict()))
    await feed.drain()
    assert [m["id"] for m in chat.items] == [msg.id]


async def test_out_of_order_live_rows_are_placed_by_time(chat, feed, make_conversation):
    conv = await make_conversation()
    await chat.open(conv.id)
    t0 = utcnow()

    feed.publish(_live(conv.id, 12, t0 + timedelta(seconds=3), "third"))
    feed.publish(_live(conv.id, 10, t0 + timedelta(seconds=1), "first"))
    feed.publish(_live(conv.id, 11, t0 + timedelta(seconds=2), "second"))
    feed.publish(_live(conv.id, 9, t0 + timedelta(seconds=2), "second-tie"))
    await feed.drain()

    assert [m["text"] for m in chat.items] == ["first", "second-tie", "second", "third"]


async def test_rows_arriving_during_history_load_are_kept(
    chat, sessions, feed, make_conversation, monkeypatch
):
    """A row the feed delivers while history is loading is shown exactly once."""
    conv = await make_conversation()
    old = await _post(sessions, conv.id, conv.client_id, "from history")
    load_history = chat._load_history

    async def slow_history(conversation_id):
        rows = await load_history(conversation_id)
        late = utcnow() + timedelta(seconds=1)
        feed.publish(_live(conv.id, old.id + 100, late, "during load"))
        feed.publish(Change(table="messages", event=INSERT, record=old.to_dict()))
        await feed.drain()
        return rows

    monkeypatch.setattr(chat, "_load_history", slow_history)
    await chat.open(conv.id)

    assert [m["text"] for m in chat.items] == ["from history", "during load"]


async def test_live_row_without_text_is_fetched_in_full(chat, engine, feed, make_conversation):
    """A long message arrives from the database trigger with its text stripped."""
    conv = await make_conversation()
    await chat.open(conv.id)

    long_text = "Please find my passport details below. " * 300
    unpublished = async_sessionmaker(engine, expire_on_commit=False)
    async with unpublished() as db:
        msg = await ConversationStore(db).add_message(conv.id, conv.client_id, long_text)
        await db.commit()
    record = msg.to_dict()
    del record["text"]

    feed.publish(Change(table="messages", event=INSERT, record=record, origin="notify"))
    await feed.drain()

    assert [m["id"] for m in chat.items] == [msg.id]
    assert chat.items[0]["text"] == long_text


# ═══════════════════════════════════════════════════════════
# Sending
# ═══════════════════════════════════════════════════════════


async def test_send_empty_is_a_noop(chat, sessions, make_conversation):
    conv = await make_conversation()
    await chat.open(conv.id)

    assert await chat.send("   ") is None
    assert await chat.send(None) is None
    async with sessions() as db:
        assert await ConversationStore(db).messages(conv.id) == []


async def test_send_without_open_chat_is_a_noop(chat):
    assert await chat.send("hello") is None


async def test_own_message_arrives_through_the_feed(chat, agent, feed, make_conversation):
    conv = await make_conversation()
    await chat.open(conv.id)

    sent = await chat.send("  On it.  ")
    assert sent["text"] == "On it."
    await feed.drain()

    assert [m["id"] for m in chat.items] == [sent["id"]]
    assert chat.items[0]["mine"] is True


async def test_send_advances_last_activity(chat, sessions, make_conversation):
    conv = await make_conversation(minutes_ago=30)
    await chat.open(conv.id)
    await chat.send("ping")

    async with sessions() as db:
        reloaded = await ConversationStore(db).require(conv.id)
        messages = await ConversationStore(db).messages(conv.id)
    assert as_utc(reloaded.last_activity) > as_utc(conv.last_activity)
    assert [m.text for m in messages] == ["ping"]


# ═══════════════════════════════════════════════════════════
# Teardown
# ═══════════════════════════════════════════════════════════


async def test_switching_chats_tears_down_before_subscribing(
    chat, context, sessions, feed, make_conversation, monkeypatch
):
    a = await make_conversation()
    b = await make_conversation()

    live_at_subscribe = []
    subscribe = feed.subscribe

    def spy(*args, **kwargs):
        live_at_subscribe.append(len(feed.subscriptions("messages")))
        return subscribe(*args, **kwargs)

    monkeypatch.setattr(feed, "subscribe", spy)

    await chat.open(a.id)
    sub_a = context.chat_subscription
    teardowns = []
    close_a = sub_a.close

    def counting_close():
        if not sub_a.closed:
            teardowns.append(sub_a)
        close_a()

    sub_a.close = counting_close

    await chat.open(b.id)

    assert live_at_subscribe == [0, 0]
    assert teardowns == [sub_a]
    assert feed.subscriptions("messages") == [context.chat_subscription]
    assert context.conversation_id == b.id

    await _post(sessions, a.id, a.client_id, "to the old chat")
    await feed.drain()
    assert chat.items == []


async def test_detach_leaves_no_subscription(chat, context, feed, make_conversation):
    conv = await make_conversation()
    await chat.open(conv.id)
    assert len(feed.subscriptions("messages")) == 1

    await chat.detach()
    assert feed.subscriptions("messages") == []
    assert context.chat_subscription is None
    assert context.conversation_id is None
    assert chat.items == []


async def test_close_detaches_even_when_already_closed_elsewhere(
    chat, agent, context, sessions, feed, make_conversation
):
    conv = await make_conversation()
    async with sessions() as db:
        await QueueEngine(db).claim(agent.id, conv.id)
    await chat.open(conv.id)

    async with sessions() as db:
        await QueueEngine(db).release(conv.id)

    with pytest.raises(InvalidTransition):
        await chat.close()
    assert context.conversation_id is None
    assert feed.subscriptions("messages") == []
    assert chat.items == []
