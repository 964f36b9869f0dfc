"""Realtime list trackers — queue partitions, deadline ribbon, missed calls.

Learn: Every dashboard list follows the same shape:

    subscribe(table, "*")  →  on ANY change  →  full re-query  →  emit

No incremental patching. A change event only says "something in this
table moved", and the tracker rebuilds its snapshot from the store. This
is simple and always correct; list sizes are small (a waiting queue, a
few dozen ribbon items), so the extra queries are cheap.

A failed refresh is logged and keeps the previous snapshot; the next
change triggers another attempt.
"""

import uuid
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from switchboard.db.models import DeadlineTask, MissedCall, as_utc, utcnow
from switchboard.errors import NotFound
from switchboard.realtime.feed import ANY, Change, ChangeFeed, Subscription
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.read_model import ReadModel
from switchboard.states import CallStatus, TaskStatus, ensure_transition

logger = structlog.get_logger()


class ResyncTracker(ReadModel):
    """Base: keep `items` equal to `query()` whenever `table` changes."""

    table = ""

    def __init__(self, sessions: async_sessionmaker[AsyncSession], feed: ChangeFeed):
        super().__init__()
        self.sessions = sessions
        self.feed = feed
        self.subscription: Optional[Subscription] = None
        self.refreshes = 0

    async def start(self) -> Subscription:
        """Subscribe, then load the initial snapshot."""
        if self.subscription is None or self.subscription.closed:
            self.subscription = self.feed.subscribe(
                self.table, self._on_change, event=ANY
            )
        await self.refresh()
        return self.subscription

    def stop(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    async def refresh(self) -> list[dict[str, Any]]:
        async with self.sessions() as db:
            self.items = await self.query(db)
        self.refreshes += 1
        await self._emit()
        return self.items

    async def query(self, db: AsyncSession) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def _on_change(self, change: Change) -> None:
        try:
            await self.refresh()
        except Exception:
            logger.exception("tracker.refresh_failed", table=self.table)


# ═══════════════════════════════════════════════════════════
# Queue partitions
# ═══════════════════════════════════════════════════════════


class WaitingQueue(ResyncTracker):
    """Every queued conversation, oldest activity first."""

    name = "waiting"
    table = "conversations"

    async def query(self, db: AsyncSession) -> list[dict[str, Any]]:
        return [queue_item(c) for c in await QueueEngine(db).list_waiting()]


class ActiveQueue(ResyncTracker):
    """The agent's own active conversations.

    Learn: Each refresh also rewrites the agent's cached active count, so
    the cache converges on every conversation change any dashboard makes.
    """

    name = "active"
    table = "conversations"

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        agent_id: uuid.UUID,
    ):
        super().__init__(sessions, feed)
        self.agent_id = agent_id

    async def query(self, db: AsyncSession) -> list[dict[str, Any]]:
        engine = QueueEngine(db)
        active = await engine.list_active_for(self.agent_id)
        await engine.reconcile_count(self.agent_id)
        return [queue_item(c) for c in active]


def queue_item(conv) -> dict[str, Any]:
    data = conv.to_dict()
    data["client_name"] = conv.client_name or "Guest User"
    return data


# ═══════════════════════════════════════════════════════════
# Ribbon + missed calls
# ═══════════════════════════════════════════════════════════


async def pending_tasks(db: AsyncSession) -> list[dict[str, Any]]:
    """Pending deadline tasks, soonest first, each flagged `urgent` once past due."""
    result = await db.execute(
        select(DeadlineTask)
        .where(DeadlineTask.status == TaskStatus.PENDING.value)
        .order_by(DeadlineTask.deadline.asc(), DeadlineTask.id.asc())
    )
    now = utcnow()
    items = []
    for task in result.scalars().all():
        data = task.to_dict()
        data["urgent"] = as_utc(task.deadline) < now
        items.append(data)
    return items


async def complete_task(db: AsyncSession, task_id: int) -> DeadlineTask:
    task = await db.get(DeadlineTask, task_id)
    if task is None:
        raise NotFound(f"Deadline task {task_id} not found")
    task.status = ensure_transition(task.status, TaskStatus.DONE, "deadline task").value
    await db.commit()
    logger.info("ribbon.task_completed", task_id=task_id)
    return task


async def unattended_calls(db: AsyncSession) -> list[dict[str, Any]]:
    result = await db.execute(
        select(MissedCall)
        .where(MissedCall.status == CallStatus.UNATTENDED.value)
        .order_by(MissedCall.created_at.asc(), MissedCall.id.asc())
    )
    return [c.to_dict() for c in result.scalars().all()]


async def acknowledge_call(db: AsyncSession, call_id: int) -> MissedCall:
    """One-way flip unattended → attended.

    Raises:
        NotFound: unknown call
        InvalidTransition: already attended
    """
    call = await db.get(MissedCall, call_id)
    if call is None:
        raise NotFound(f"Missed call {call_id} not found")
    call.status = ensure_transition(call.status, CallStatus.ATTENDED, "missed call").value
    await db.commit()
    logger.info("missed_call.acknowledged", call_id=call_id)
    return call


class RibbonTracker(ResyncTracker):
    """Pending deadline tasks, soonest deadline first. Past ones are urgent."""

    name = "ribbon"
    table = "deadline_tasks"

    async def query(self, db: AsyncSession) -> list[dict[str, Any]]:
        return await pending_tasks(db)

    async def complete(self, task_id: int) -> dict[str, Any]:
        """Mark a ribbon task done (it drops off every ribbon)."""
        async with self.sessions() as db:
            return (await complete_task(db, task_id)).to_dict()


class MissedCallTracker(ResyncTracker):
    """Unattended missed calls, oldest first."""

    name = "missed_calls"
    table = "missed_calls"

    async def query(self, db: AsyncSession) -> list[dict[str, Any]]:
        return await unattended_calls(db)

    async def acknowledge(self, call_id: int) -> dict[str, Any]:
        async with self.sessions() as db:
            return (await acknowledge_call(db, call_id)).to_dict()
