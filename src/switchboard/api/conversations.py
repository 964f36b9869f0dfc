"""Conversation API — claim, close, search, messages, secure record.

Learn: Routes are a thin translation layer. The services enforce the
state machine and the concurrency cap; `service_errors()` maps their
taxonomy to status codes:
- CapacityExceeded / InvalidTransition → 409 (well-formed request that
  conflicts with current state)
- NotFound → 404
- DeadlineTaskFailed → 502, detail carries the record that WAS saved

Nothing here publishes change notifications. Every commit is picked up by
the change feed and reaches live dashboards on its own.
"""

import uuid

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.errors import service_errors
from switchboard.auth.dependencies import get_current_agent
from switchboard.db.engine import get_db
from switchboard.schemas.conversation import (
    ConversationRead,
    MessageCreate,
    MessageRead,
)
from switchboard.schemas.secure_record import (
    SecureRecordRead,
    SecureRecordSave,
    SecureRecordSaved,
)
from switchboard.services.conversation_store import ConversationStore
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.secure_records import SecureRecordLinker
from switchboard.services.session_context import StaffIdentity

router = APIRouter(prefix="/conversations")


# ═══════════════════════════════════════════════════════════
# Assignment
# ═══════════════════════════════════════════════════════════


@router.get("/search", response_model=ConversationRead)
async def search_conversation(
    code: str = Query(..., min_length=1, description="Client display code"),
    db: AsyncSession = Depends(get_db),
):
    """Most recent conversation for a client's display code (404 if none)."""
    with service_errors():
        return await QueueEngine(db).find_by_display_code(code)


@router.get("/{conversation_id}", response_model=ConversationRead)
async def get_conversation(conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    with service_errors():
        return await QueueEngine(db).get(conversation_id)


@router.post("/{conversation_id}/claim", response_model=ConversationRead)
async def claim_conversation(
    conversation_id: uuid.UUID,
    agent: StaffIdentity = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
):
    """Claim a waiting conversation for the caller."""
    with service_errors():
        return await QueueEngine(db).claim(agent.id, conversation_id)


@router.post("/{conversation_id}/close", response_model=ConversationRead)
async def close_conversation(
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Release an active conversation and free its agent's slot."""
    with service_errors():
        return await QueueEngine(db).release(conversation_id)


# ═══════════════════════════════════════════════════════════
# Messages
# ═══════════════════════════════════════════════════════════


@router.get("/{conversation_id}/messages", response_model=list[MessageRead])
async def list_messages(conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Full history, oldest first."""
    store = ConversationStore(db)
    with service_errors():
        await store.require(conversation_id)
        return await store.messages(conversation_id)


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=201,
    responses={204: {"description": "Empty text, nothing sent"}},
)
async def send_message(
    conversation_id: uuid.UUID,
    body: MessageCreate,
    agent: StaffIdentity = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
):
    """Append a message as the caller. Whitespace-only text is a no-op."""
    text = body.text.strip()
    if not text:
        return Response(status_code=204)
    with service_errors():
        msg = await ConversationStore(db).add_message(conversation_id, agent.id, text)
        await db.commit()
    return msg


# ═══════════════════════════════════════════════════════════
# Secure record
# ═══════════════════════════════════════════════════════════


@router.get("/{conversation_id}/secure-record", response_model=SecureRecordRead)
async def load_secure_record(conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """The client's record, or an empty one if none was ever saved."""
    with service_errors():
        return await SecureRecordLinker(db).load(conversation_id)


@router.put("/{conversation_id}/secure-record", response_model=SecureRecordSaved)
async def save_secure_record(
    conversation_id: uuid.UUID,
    body: SecureRecordSave,
    agent: StaffIdentity = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
):
    """Replace the client's record; a deadline also adds a ribbon task."""
    with service_errors():
        result = await SecureRecordLinker(db).save(
            conversation_id,
            body.fields(),
            deadline=body.deadline,
            updated_by=agent.name,
        )
    return {"record": result.record, "task": result.task}
