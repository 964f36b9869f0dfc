"""Dashboard tests — login, actions as the error boundary, logout.

Learn: These drive the Dashboard the way the WebSocket command loop does:
one long-lived object per agent, one database session per action, and
every list kept live through the feed. Two dashboards in one test stand
in for two agents at two browsers.
"""

import pytest
from sqlalchemy.exc import OperationalError

from switchboard.db.models import Agent, MissedCall
from switchboard.errors import (
    AuthenticationFailed,
    AuthorizationDenied,
    CapacityExceeded,
    InvalidTransition,
    NotFound,
    TransientIOFailure,
)
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.trackers import RibbonTracker

PASSWORD = "correct-horse"


async def _login(make_agent, make_dashboard, name="Alice"):
    agent = await make_agent(name)
    dashboard = make_dashboard()
    await dashboard.login(agent.email, PASSWORD)
    return agent, dashboard


async def _agent_row(sessions, agent_id):
    async with sessions() as db:
        return await db.get(Agent, agent_id)


# ═══════════════════════════════════════════════════════════
# Login / logout
# ═══════════════════════════════════════════════════════════


async def test_login_goes_online_and_starts_lists(
    sessions, feed, make_agent, make_dashboard, make_conversation
):
    conv = await make_conversation()
    agent, dashboard = await _login(make_agent, make_dashboard)

    assert dashboard.agent.id == agent.id
    assert (await _agent_row(sessions, agent.id)).status == "online"
    assert [c["id"] for c in dashboard.waiting.items] == [str(conv.id)]
    assert len(dashboard.context.list_subscriptions) == 4
    await dashboard.logout()


async def test_wrong_password_changes_nothing(sessions, make_agent, make_dashboard):
    agent = await make_agent()
    dashboard = make_dashboard()

    with pytest.raises(AuthenticationFailed):
        await dashboard.login(agent.email, "wrong")

    assert dashboard.agent is None
    assert (await _agent_row(sessions, agent.id)).status == "offline"


async def test_non_staff_is_denied(feed, make_agent, make_dashboard):
    client = await make_agent("Carol", role="client")
    dashboard = make_dashboard()

    with pytest.raises(AuthorizationDenied):
        await dashboard.login(client.email, PASSWORD)

    assert dashboard.agent is None
    assert feed.subscriptions() == []


async def test_logout_tears_everything_down(
    sessions, feed, make_agent, make_dashboard, make_conversation
):
    conv = await make_conversation()
    agent, dashboard = await _login(make_agent, make_dashboard)
    await dashboard.claim(conv.id)
    assert feed.subscriptions()

    await dashboard.logout()

    assert feed.subscriptions() == []
    assert dashboard.agent is None
    assert dashboard.context.conversation_id is None
    assert (await _agent_row(sessions, agent.id)).status == "offline"


async def test_failed_list_start_undoes_the_login(
    sessions, feed, make_agent, make_dashboard, monkeypatch
):
    agent = await make_agent()
    dashboard = make_dashboard()

    async def broken(self, db):
        raise OperationalError("SELECT deadline_tasks", {}, Exception("database is gone"))

    monkeypatch.setattr(RibbonTracker, "query", broken)

    with pytest.raises(TransientIOFailure):
        await dashboard.login(agent.email, PASSWORD)

    assert dashboard.agent is None
    assert dashboard.context.list_subscriptions == []
    assert feed.subscriptions() == []
    assert (await _agent_row(sessions, agent.id)).status == "offline"


async def test_actions_require_login(make_dashboard, make_conversation):
    conv = await make_conversation()
    with pytest.raises(AuthenticationFailed):
        await make_dashboard().claim(conv.id)


# ═══════════════════════════════════════════════════════════
# Queue actions
# ═══════════════════════════════════════════════════════════


async def test_claim_opens_chat_and_record(feed, make_agent, make_dashboard, make_conversation):
    conv = await make_conversation(client_name="Mira")
    agent, dashboard = await _login(make_agent, make_dashboard)
    changed = []
    dashboard.on_change(changed.append)

    await dashboard.claim(conv.id)
    await feed.drain()

    assert dashboard.context.conversation_id == conv.id
    assert dashboard.secure_record["client_id"] == str(conv.client_id)
    assert dashboard.waiting.items == []
    assert [c["id"] for c in dashboard.active.items] == [str(conv.id)]
    assert {"messages", "secure_record", "waiting", "active"} <= set(changed)
    await dashboard.logout()


async def test_second_agent_sees_the_claim(feed, make_agent, make_dashboard, make_conversation):
    conv = await make_conversation()
    _, alice = await _login(make_agent, make_dashboard, "Alice")
    _, bob = await _login(make_agent, make_dashboard, "Bob")

    await alice.claim(conv.id)
    await feed.drain()

    assert bob.waiting.items == []
    with pytest.raises(InvalidTransition):
        await bob.claim(conv.id)
    await alice.logout()
    await bob.logout()


async def test_capacity_blocks_third_claim(make_agent, make_dashboard, make_conversation):
    convs = [await make_conversation(minutes_ago=3 - i) for i in range(3)]
    _, dashboard = await _login(make_agent, make_dashboard)

    await dashboard.claim(convs[0].id)
    await dashboard.claim(convs[1].id)
    with pytest.raises(CapacityExceeded):
        await dashboard.claim(convs[2].id)

    assert dashboard.context.conversation_id == convs[1].id
    await dashboard.logout()


async def test_pick_up_claims_waiting_and_opens_active(
    sessions, make_agent, make_dashboard, make_conversation
):
    waiting = await make_conversation()
    mine = await make_conversation()
    agent, dashboard = await _login(make_agent, make_dashboard)
    async with sessions() as db:
        await QueueEngine(db).claim(agent.id, mine.id)

    claimed = await dashboard.pick_up(waiting.id)
    assert claimed.status == "active"
    assert claimed.assigned_to == agent.id

    opened = await dashboard.pick_up(mine.id)
    assert opened.id == mine.id
    assert dashboard.context.conversation_id == mine.id
    await dashboard.logout()


async def test_search_opens_by_display_code(make_agent, make_dashboard, make_conversation):
    conv = await make_conversation(display_code="482913")
    _, dashboard = await _login(make_agent, make_dashboard)

    found = await dashboard.search("482913")
    assert found.id == conv.id
    assert dashboard.context.conversation_id == conv.id

    with pytest.raises(NotFound) as exc:
        await dashboard.search("999999")
    assert exc.value.message == "Client not found."
    await dashboard.logout()


# ═══════════════════════════════════════════════════════════
# Chat + record actions
# ═══════════════════════════════════════════════════════════


async def test_close_clears_chat_and_record(feed, make_agent, make_dashboard, make_conversation):
    conv = await make_conversation()
    _, dashboard = await _login(make_agent, make_dashboard)
    await dashboard.claim(conv.id)
    await dashboard.send_message("Bye for now")
    await feed.drain()
    assert [m["text"] for m in dashboard.messages] == ["Bye for now"]

    closed = await dashboard.close_conversation()
    await feed.drain()

    assert closed.status == "closed"
    assert dashboard.messages == []
    assert dashboard.secure_record["client_id"] is None
    assert dashboard.active.items == []
    assert feed.subscriptions("messages") == []
    await dashboard.logout()


async def test_close_after_another_agent_closed_clears_the_panes(
    sessions, feed, make_agent, make_dashboard, make_conversation
):
    conv = await make_conversation()
    _, dashboard = await _login(make_agent, make_dashboard)
    await dashboard.claim(conv.id)
    await dashboard.save_secure_record({"notes": "renewal"})
    async with sessions() as db:
        await QueueEngine(db).release(conv.id)
    await feed.drain()

    with pytest.raises(InvalidTransition):
        await dashboard.close_conversation()

    assert dashboard.context.conversation_id is None
    assert dashboard.messages == []
    assert dashboard.secure_record["client_id"] is None
    assert feed.subscriptions("messages") == []
    await dashboard.logout()


async def test_save_record_needs_an_open_chat(make_agent, make_dashboard):
    _, dashboard = await _login(make_agent, make_dashboard)
    with pytest.raises(NotFound):
        await dashboard.save_secure_record({"notes": "x"})
    await dashboard.logout()


async def test_save_record_with_deadline_reaches_the_ribbon(
    feed, make_agent, make_dashboard, make_conversation
):
    conv = await make_conversation()
    _, dashboard = await _login(make_agent, make_dashboard)
    await dashboard.claim(conv.id)

    result = await dashboard.save_secure_record(
        {"notes": "Need visa by Friday please review"}, deadline="2025-01-01"
    )
    await feed.drain()

    assert dashboard.secure_record["notes"] == "Need visa by Friday please review"
    assert dashboard.secure_record["updated_by"] == "Alice"
    assert [t["id"] for t in dashboard.ribbon.items] == [result.task["id"]]
    assert dashboard.ribbon.items[0]["urgent"] is True

    await dashboard.complete_ribbon_task(result.task["id"])
    await feed.drain()
    assert dashboard.ribbon.items == []
    await dashboard.logout()


async def test_acknowledge_missed_call(sessions, feed, make_agent, make_dashboard):
    async with sessions() as db:
        call = MissedCall()
        db.add(call)
        await db.commit()
    _, dashboard = await _login(make_agent, make_dashboard)
    assert [c["id"] for c in dashboard.missed.items] == [call.id]

    await dashboard.acknowledge_missed_call(call.id)
    await feed.drain()

    assert dashboard.missed.items == []
    await dashboard.logout()


# ═══════════════════════════════════════════════════════════
# Error boundary
# ═══════════════════════════════════════════════════════════


async def test_store_failure_becomes_transient_io_failure(
    make_agent, make_dashboard, make_conversation, monkeypatch
):
    conv = await make_conversation()
    _, dashboard = await _login(make_agent, make_dashboard)

    async def broken(self, agent_id, conversation_id):
        raise OperationalError("UPDATE conversations", {}, Exception("database is gone"))

    monkeypatch.setattr(QueueEngine, "claim", broken)

    with pytest.raises(TransientIOFailure) as exc:
        await dashboard.claim(conv.id)
    assert exc.value.code == "transient_io_failure"
    await dashboard.logout()


async def test_failing_view_listener_does_not_break_actions(
    make_agent, make_dashboard, make_conversation
):
    conv = await make_conversation()
    _, dashboard = await _login(make_agent, make_dashboard)

    def explode(name):
        raise RuntimeError("view crashed")

    dashboard.on_change(explode)
    await dashboard.claim(conv.id)
    assert dashboard.context.conversation_id == conv.id
    await dashboard.logout()
