"""Secure record linker — conversation → client → confidential record.

Learn: Confidential details (passport number, application id, notes) are
stored once per CLIENT, not per conversation. Both load() and save() first
resolve the conversation to its client_id, then work on that client's
single record.

save() may have two effects:
1. Upsert the client's record (last write wins, no history)
2. Only when a deadline is given: add a task to the shared ribbon

They are committed separately. If (1) succeeds and (2) fails, the caller
gets DeadlineTaskFailed carrying the saved record, so the operator is told
the record is safe but the ribbon item is missing.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.config import settings
from switchboard.db.models import DeadlineTask, SecureRecord
from switchboard.errors import DeadlineTaskFailed
from switchboard.services.conversation_store import ConversationStore
from switchboard.states import TaskStatus

logger = structlog.get_logger()

RECORD_FIELDS = ("passport_number", "application_id", "notes")

Deadline = Union[datetime, date, str]


@dataclass
class SaveResult:
    record: dict[str, Any]
    task: Optional[dict[str, Any]] = None


def empty_record(client_id: Optional[uuid.UUID] = None) -> dict[str, Any]:
    return {
        "client_id": str(client_id) if client_id else None,
        "passport_number": "",
        "application_id": "",
        "notes": "",
        "updated_by": None,
        "updated_at": None,
    }


def parse_deadline(value: Deadline) -> datetime:
    """Accept a date, a datetime, or an ISO string ('2025-01-01').

    Bare dates mean midnight UTC. Naive datetimes are taken as UTC.
    """
    if isinstance(value, str):
        value = value.strip()
        parsed = datetime.fromisoformat(value)
        if len(value) <= 10:  # date only
            parsed = datetime.combine(parsed.date(), time.min)
        value = parsed
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class SecureRecordLinker:
    """Load and save the confidential record behind a conversation."""

    def __init__(self, db: AsyncSession, note_max_length: Optional[int] = None):
        self.db = db
        self.conversations = ConversationStore(db)
        self.note_max_length = note_max_length or settings.ribbon_note_max_length

    async def load(self, conversation_id: uuid.UUID) -> dict[str, Any]:
        """The client's record, or an empty one if none was ever saved.

        Raises:
            NotFound: unknown conversation
        """
        client_id = await self.conversations.client_id_for(conversation_id)
        record = await self._record_for(client_id)
        if record is None:
            return empty_record(client_id)
        return _record_dict(record)

    async def save(
        self,
        conversation_id: uuid.UUID,
        fields: dict[str, Any],
        deadline: Optional[Deadline] = None,
        updated_by: Optional[str] = None,
    ) -> SaveResult:
        """Upsert the client's record and optionally add a ribbon task.

        Raises:
            NotFound: unknown conversation
            DeadlineTaskFailed: record saved, ribbon task not created
        """
        client_id = await self.conversations.client_id_for(conversation_id)
        values = {k: (fields.get(k) or "") for k in RECORD_FIELDS}

        try:
            record = await self._upsert(client_id, values, updated_by)
        except IntegrityError:
            # Another dashboard created the row between our read and insert.
            await self.db.rollback()
            record = await self._upsert(client_id, values, updated_by)
        saved = _record_dict(record)
        logger.info("secure_record.saved", client_id=str(client_id), by=updated_by)

        if not deadline:
            return SaveResult(record=saved)

        try:
            task = DeadlineTask(
                client_id=client_id,
                note=values["notes"][: self.note_max_length],
                deadline=parse_deadline(deadline),
                status=TaskStatus.PENDING.value,
                created_by=updated_by,
            )
            self.db.add(task)
            await self.db.commit()
        except (SQLAlchemyError, ValueError, TypeError) as e:
            await self.db.rollback()
            logger.warning(
                "secure_record.deadline_failed",
                client_id=str(client_id),
                error=str(e),
            )
            raise DeadlineTaskFailed(
                "Record saved, but the deadline could not be added to the ribbon.",
                record=saved,
            ) from e

        logger.info("ribbon.task_added", client_id=str(client_id), task_id=task.id)
        return SaveResult(record=saved, task=task.to_dict())

    async def _record_for(self, client_id: uuid.UUID) -> Optional[SecureRecord]:
        result = await self.db.execute(
            select(SecureRecord)
            .where(SecureRecord.client_id == client_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _upsert(
        self,
        client_id: uuid.UUID,
        values: dict[str, str],
        updated_by: Optional[str],
    ) -> SecureRecord:
        record = await self._record_for(client_id)
        if record is None:
            record = SecureRecord(client_id=client_id)
            self.db.add(record)
        for key, value in values.items():
            setattr(record, key, value)
        record.updated_by = updated_by
        await self.db.commit()
        return record


def _record_dict(record: SecureRecord) -> dict[str, Any]:
    data = record.to_dict()
    data.pop("id", None)
    return data
