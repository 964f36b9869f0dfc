"""Queue API — the waiting list and the caller's active list.

Learn: These are the HTTP snapshots of the two queue partitions a live
dashboard keeps in sync over the WebSocket. Reading the active list also
reconciles the caller's cached active count, same as the live tracker.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.errors import service_errors
from switchboard.auth.dependencies import get_current_agent
from switchboard.db.engine import get_db
from switchboard.schemas.conversation import QueueItem
from switchboard.services.queue_engine import QueueEngine
from switchboard.services.session_context import StaffIdentity
from switchboard.services.trackers import queue_item

router = APIRouter(prefix="/queue")


@router.get("/waiting", response_model=list[QueueItem])
async def list_waiting(db: AsyncSession = Depends(get_db)):
    """Queued conversations, oldest activity first."""
    with service_errors():
        return [queue_item(c) for c in await QueueEngine(db).list_waiting()]


@router.get("/active", response_model=list[QueueItem])
async def list_active(
    agent: StaffIdentity = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
):
    """The caller's own active conversations."""
    engine = QueueEngine(db)
    with service_errors():
        active = await engine.list_active_for(agent.id)
        await engine.reconcile_count(agent.id)
    return [queue_item(c) for c in active]
