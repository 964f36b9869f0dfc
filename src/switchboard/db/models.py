"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic migrations mirror these definitions.

Key concepts:
- UUID primary keys for agents and conversations (they are referenced from
  other systems: the identity provider and the inbound-contact front end)
- Integer keys for append-only rows (messages, ribbon tasks, missed calls)
- Status columns are plain strings holding `switchboard.states` enum values
- Every table is watched by the change feed, so `to_dict()` is the wire
  shape of a row in a change notification as well as in the API
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    inspect,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from switchboard.states import AgentStatus, CallStatus, ConversationStatus, TaskStatus


class Base(DeclarativeBase):
    """Base class for all models."""

    # Columns never broadcast through the change feed.
    __feed_exclude__: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Column values as JSON-friendly primitives."""
        out = {}
        for attr in inspect(self).mapper.column_attrs:
            out[attr.key] = _jsonable(getattr(self, attr.key))
        return out

    def feed_dict(self) -> dict[str, Any]:
        """Row as published on the change feed (confidential columns removed)."""
        data = self.to_dict()
        for key in self.__feed_exclude__:
            data.pop(key, None)
        return data


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (some dialects drop the offset)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


# ══════════════════════════════════════════════════════════════
# Staff
# ══════════════════════════════════════════════════════════════


class Agent(Base):
    """A staff member who picks up conversations.

    Learn: `active_chat_count` is a cache. The truth is the number of
    conversations with status='active' and assigned_to=this agent;
    QueueEngine.reconcile_count() rewrites the cache after every claim
    and release.
    """

    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default="agent"
    )  # agent, supervisor
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgentStatus.OFFLINE.value
    )
    active_chat_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_active: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.pop("password_hash", None)
        return data


# ══════════════════════════════════════════════════════════════
# Conversations + messages
# ══════════════════════════════════════════════════════════════


class Conversation(Base):
    """One client contact waiting for, or being handled by, an agent.

    Learn: Created by the inbound-contact front end in 'queued' status.
    Only QueueEngine moves it forward: queued → active → closed.
    `last_activity` is the FIFO key for the waiting queue and advances
    whenever someone sends a message.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_status_activity", "status", "last_activity"),
        Index("ix_conversations_assignee", "assigned_to", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    client_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    display_code: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationStatus.QUEUED.value
    )
    assigned_to: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("agents.id"), nullable=True
    )
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    # Optimistic lock: every UPDATE is conditional on the version read, so
    # two dashboards racing for the same row cannot both win.
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}


class Message(Base):
    """A chat line. Append-only — never updated or deleted.

    `text` is NULL for attachments.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# ══════════════════════════════════════════════════════════════
# Client records + ribbon + missed calls
# ══════════════════════════════════════════════════════════════


class SecureRecord(Base):
    """Confidential client details — one row per client, last write wins.

    Learn: Keyed by client_id, not conversation id, so every
    conversation the client ever opens shows the same record.
    """

    __tablename__ = "secure_records"
    __feed_exclude__ = ("passport_number", "application_id", "notes")

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    passport_number: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    application_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class DeadlineTask(Base):
    """An item on the shared deadline ribbon."""

    __tablename__ = "deadline_tasks"
    __table_args__ = (
        Index("ix_deadline_tasks_status_deadline", "status", "deadline"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    note: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskStatus.PENDING.value
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class MissedCall(Base):
    """A call nobody answered. Flipped to 'attended' when acknowledged."""

    __tablename__ = "missed_calls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CallStatus.UNATTENDED.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


# Tables the change feed watches, keyed by table name.
WATCHED_MODELS: dict[str, type[Base]] = {
    m.__tablename__: m
    for m in (Agent, Conversation, Message, SecureRecord, DeadlineTask, MissedCall)
}
