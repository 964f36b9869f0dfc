"""Ribbon and missed-call API.

Learn: The deadline ribbon and the missed-call list are shared by every
agent. Completing a task or acknowledging a call is a one-way status flip;
repeating it is a 409.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.api.errors import service_errors
from switchboard.db.engine import get_db
from switchboard.schemas.secure_record import DeadlineTaskRead, MissedCallRead
from switchboard.services.trackers import (
    acknowledge_call,
    complete_task,
    pending_tasks,
    unattended_calls,
)

router = APIRouter()


@router.get("/ribbon", response_model=list[DeadlineTaskRead])
async def list_ribbon(db: AsyncSession = Depends(get_db)):
    """Pending deadline tasks, soonest first."""
    with service_errors():
        return await pending_tasks(db)


@router.post("/ribbon/{task_id}/complete", response_model=DeadlineTaskRead)
async def complete_ribbon_task(task_id: int, db: AsyncSession = Depends(get_db)):
    with service_errors():
        task = await complete_task(db, task_id)
    return task.to_dict()


@router.get("/missed-calls", response_model=list[MissedCallRead])
async def list_missed_calls(db: AsyncSession = Depends(get_db)):
    """Unattended missed calls, oldest first."""
    with service_errors():
        return await unattended_calls(db)


@router.post("/missed-calls/{call_id}/ack", response_model=MissedCallRead)
async def acknowledge_missed_call(call_id: int, db: AsyncSession = Depends(get_db)):
    """Mark a missed call attended (409 if it already is)."""
    with service_errors():
        call = await acknowledge_call(db, call_id)
    return call.to_dict()
