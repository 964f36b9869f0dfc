"""Pydantic schemas for conversations and messages.

Learn: Read schemas use from_attributes so routes can return ORM rows
directly. Status is a plain string holding a ConversationStatus value.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ─── Conversations ───────────────────────────────────────

class ConversationRead(BaseModel):
    id: uuid.UUID
    client_id: uuid.UUID
    client_name: Optional[str] = None
    display_code: str
    status: str
    assigned_to: Optional[uuid.UUID] = None
    last_activity: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class QueueItem(ConversationRead):
    """A row of the waiting or active list (client_name defaults to 'Guest User')."""
    client_name: str


# ─── Messages ────────────────────────────────────────────

class MessageCreate(BaseModel):
    text: str = Field(..., max_length=10_000)


class MessageRead(BaseModel):
    id: int
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    text: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}
