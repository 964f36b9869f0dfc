"""Conversation store — CRUD and queries over conversation rows.

Learn: A thin repository around conversations and their messages. It knows nothing
about the change feed or the assignment rules; QueueEngine builds the
state machine on top of it, and the inbound-contact front end (or a test)
uses create() to put new contacts in the queue.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.db.models import Conversation, Message, utcnow
from switchboard.errors import NotFound
from switchboard.states import ConversationStatus


class ConversationStore:
    """Queries over conversations. All writes go through the caller's session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ─── Create ──────────────────────────────────────────

    async def create(
        self,
        client_id: uuid.UUID,
        display_code: str,
        client_name: Optional[str] = None,
        last_activity: Optional[datetime] = None,
    ) -> Conversation:
        """Open a new conversation in 'queued' status."""
        conv = Conversation(
            client_id=client_id,
            display_code=display_code,
            client_name=client_name,
            status=ConversationStatus.QUEUED.value,
            last_activity=last_activity or utcnow(),
        )
        self.db.add(conv)
        await self.db.commit()
        return conv

    # ─── Read ────────────────────────────────────────────

    async def get(self, conversation_id: uuid.UUID) -> Optional[Conversation]:
        result = await self.db.execute(
            select(Conversation).where(Conversation.id == conversation_id)
        )
        return result.scalars().first()

    async def require(self, conversation_id: uuid.UUID) -> Conversation:
        conv = await self.get(conversation_id)
        if conv is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return conv

    async def find_by_display_code(self, code: str) -> Optional[Conversation]:
        """Most recent conversation for a client's public code."""
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.display_code == code.strip())
            .order_by(Conversation.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def client_id_for(self, conversation_id: uuid.UUID) -> uuid.UUID:
        """Resolve conversation → client identity."""
        result = await self.db.execute(
            select(Conversation.client_id).where(Conversation.id == conversation_id)
        )
        client_id = result.scalar_one_or_none()
        if client_id is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return client_id

    async def find(
        self,
        status: Optional[ConversationStatus] = None,
        assigned_to: Optional[uuid.UUID] = None,
        oldest_first: bool = False,
        limit: Optional[int] = None,
    ) -> list[Conversation]:
        """List conversations with optional equality filters.

        Learn: Filters are applied only when given. `oldest_first` orders
        by last_activity ascending, which is the waiting-queue order. No
        limit by default: the waiting queue must never be cut short.
        """
        query = select(Conversation)
        if limit is not None:
            query = query.limit(limit)
        if status is not None:
            query = query.where(Conversation.status == status.value)
        if assigned_to is not None:
            query = query.where(Conversation.assigned_to == assigned_to)
        if oldest_first:
            query = query.order_by(Conversation.last_activity.asc(), Conversation.id)
        else:
            query = query.order_by(Conversation.created_at.asc(), Conversation.id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count(
        self,
        status: ConversationStatus,
        assigned_to: Optional[uuid.UUID] = None,
    ) -> int:
        query = (
            select(func.count())
            .select_from(Conversation)
            .where(Conversation.status == status.value)
        )
        if assigned_to is not None:
            query = query.where(Conversation.assigned_to == assigned_to)
        result = await self.db.execute(query)
        return int(result.scalar_one())

    # ─── Update ──────────────────────────────────────────

    async def touch(self, conv: Conversation, when: Optional[datetime] = None) -> None:
        """Advance last_activity (flushed with the caller's next commit)."""
        conv.last_activity = when or utcnow()

    # ─── Messages ────────────────────────────────────────

    async def messages(self, conversation_id: uuid.UUID) -> list[Message]:
        """Full history, oldest first (ties broken by id)."""
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
        )
        return list(result.scalars().all())

    async def message(self, message_id: int) -> Optional[Message]:
        return await self.db.get(Message, message_id)

    async def add_message(
        self,
        conversation_id: uuid.UUID,
        sender_id: uuid.UUID,
        text: str,
    ) -> Message:
        """Append a message and advance the conversation's last_activity.

        Not committed: the caller owns the transaction.
        """
        conv = await self.require(conversation_id)
        msg = Message(conversation_id=conversation_id, sender_id=sender_id, text=text)
        self.db.add(msg)
        await self.touch(conv)
        return msg
