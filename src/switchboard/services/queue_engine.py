"""Queue engine — waiting/active partitions and the assignment state machine.

Learn: This is the CORE of the dispatch dashboard. Every transition is:
1. Validated against the conversation state machine (states.py)
2. Guarded by the per-agent concurrency cap (claim only)
3. Written with an optimistic version check, so a row that changed
   since it was read is never overwritten
4. Followed by a reconciliation of the agent's cached active count

The state machine:
  queued → active → closed

The engine never notifies anyone itself. Whatever it commits is picked up
by the change feed (commit capture or Postgres triggers) and fanned out to
every subscribed dashboard.

Race note: the capacity guard reads the cached count and then writes, with
no lock spanning the two. Two claims by the same agent can both pass the
guard. Two claims on the same conversation cannot both win: the second
write fails its version check and surfaces as InvalidTransition.
"""

import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from switchboard.config import settings
from switchboard.db.models import Agent, Conversation
from switchboard.errors import CapacityExceeded, InvalidTransition, NotFound
from switchboard.services.conversation_store import ConversationStore
from switchboard.states import ConversationStatus, ensure_transition

logger = structlog.get_logger()


class QueueEngine:
    """Assignment transitions and the per-agent concurrency cap."""

    def __init__(self, db: AsyncSession, max_active_chats: Optional[int] = None):
        self.db = db
        self.store = ConversationStore(db)
        self.max_active_chats = (
            max_active_chats if max_active_chats is not None
            else settings.max_active_chats
        )

    # ─── Partitions ──────────────────────────────────────

    async def list_waiting(self) -> list[Conversation]:
        """Queued conversations, oldest activity first (strict FIFO)."""
        return await self.store.find(
            status=ConversationStatus.QUEUED, oldest_first=True
        )

    async def list_active_for(self, agent_id: uuid.UUID) -> list[Conversation]:
        return await self.store.find(
            status=ConversationStatus.ACTIVE, assigned_to=agent_id
        )

    async def get(self, conversation_id: uuid.UUID) -> Conversation:
        return await self.store.require(conversation_id)

    async def find_by_display_code(self, code: str) -> Conversation:
        """Search by the client's public code.

        Raises:
            NotFound: the search is a user-visible failure when nothing matches.
        """
        conv = await self.store.find_by_display_code(code)
        if conv is None:
            raise NotFound("Client not found.")
        return conv

    # ─── Transitions ─────────────────────────────────────

    async def claim(
        self, agent_id: uuid.UUID, conversation_id: uuid.UUID
    ) -> Conversation:
        """Take ownership of a waiting conversation.

        Learn: The guard re-reads the agent's cached active count from the
        database right before the write, never from memory. If the agent is
        at the cap nothing is written.

        Raises:
            NotFound: unknown conversation or agent
            InvalidTransition: the conversation is not queued (or stopped
                being queued before our write landed)
            CapacityExceeded: the agent already has max_active_chats chats
        """
        conv = await self.store.require(conversation_id)
        ensure_transition(conv.status, ConversationStatus.ACTIVE, "conversation")

        current = await self._cached_count(agent_id)
        if current >= self.max_active_chats:
            logger.info(
                "queue.claim_blocked",
                agent_id=str(agent_id),
                conversation_id=str(conversation_id),
                active=current,
            )
            raise CapacityExceeded(
                f"Limit reached: you are handling {current} chats. "
                "Please finish one first."
            )

        conv.status = ConversationStatus.ACTIVE.value
        conv.assigned_to = agent_id
        try:
            await self.db.flush()
        except StaleDataError:
            await self.db.rollback()
            logger.info(
                "queue.claim_lost_race",
                agent_id=str(agent_id),
                conversation_id=str(conversation_id),
            )
            raise InvalidTransition(
                "Conversation was picked up by someone else."
            )

        await self.reconcile_count(agent_id, commit=False)
        await self.db.commit()
        logger.info(
            "queue.claimed",
            agent_id=str(agent_id),
            conversation_id=str(conversation_id),
        )
        return conv

    async def release(self, conversation_id: uuid.UUID) -> Conversation:
        """Close an active conversation and free the agent's slot.

        Raises:
            NotFound: unknown conversation
            InvalidTransition: the conversation is not active
        """
        conv = await self.store.require(conversation_id)
        ensure_transition(conv.status, ConversationStatus.CLOSED, "conversation")

        previous = conv.assigned_to
        conv.status = ConversationStatus.CLOSED.value
        conv.assigned_to = None
        try:
            await self.db.flush()
        except StaleDataError:
            await self.db.rollback()
            raise InvalidTransition("Conversation changed while closing it.")

        if previous is not None:
            await self.reconcile_count(previous, commit=False)
        await self.db.commit()
        logger.info(
            "queue.released",
            conversation_id=str(conversation_id),
            agent_id=str(previous) if previous else None,
        )
        return conv

    # ─── Count cache ─────────────────────────────────────

    async def reconcile_count(self, agent_id: uuid.UUID, commit: bool = True) -> int:
        """Rewrite the agent's active_chat_count from the true assignment count."""
        agent = await self._agent(agent_id)
        true_count = await self.store.count(
            ConversationStatus.ACTIVE, assigned_to=agent_id
        )
        if agent.active_chat_count != true_count:
            logger.debug(
                "queue.count_reconciled",
                agent_id=str(agent_id),
                cached=agent.active_chat_count,
                actual=true_count,
            )
            agent.active_chat_count = true_count
        if commit:
            await self.db.commit()
        return true_count

    async def _cached_count(self, agent_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(Agent.active_chat_count).where(Agent.id == agent_id)
        )
        count = result.scalar_one_or_none()
        if count is None:
            raise NotFound(f"Agent {agent_id} not found")
        return count

    async def _agent(self, agent_id: uuid.UUID) -> Agent:
        result = await self.db.execute(
            select(Agent)
            .where(Agent.id == agent_id)
            .execution_options(populate_existing=True)
        )
        agent = result.scalars().first()
        if agent is None:
            raise NotFound(f"Agent {agent_id} not found")
        return agent
