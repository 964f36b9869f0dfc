"""Secure record linker tests — per-client records and ribbon tasks.

Learn: Records belong to the client, so two conversations of the same
client share one record. A save with a deadline adds exactly one pending
ribbon task whose note is the record's notes cut to the ribbon length.
"""

import uuid
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import func, select

from switchboard.db.models import DeadlineTask, SecureRecord
from switchboard.errors import DeadlineTaskFailed, NotFound
from switchboard.services.secure_records import SecureRecordLinker, parse_deadline


async def _tasks(sessions):
    async with sessions() as db:
        return (await db.execute(select(DeadlineTask))).scalars().all()


async def test_load_without_record_is_empty(db, make_conversation):
    conv = await make_conversation()
    record = await SecureRecordLinker(db).load(conv.id)

    assert record["client_id"] == str(conv.client_id)
    assert record["passport_number"] == ""
    assert record["application_id"] == ""
    assert record["notes"] == ""


async def test_load_unknown_conversation(db):
    with pytest.raises(NotFound):
        await SecureRecordLinker(db).load(uuid.uuid4())


async def test_save_with_deadline_adds_one_ribbon_task(sessions, make_conversation):
    conv = await make_conversation()

    async with sessions() as db:
        result = await SecureRecordLinker(db).save(
            conv.id,
            {"passport_number": "X1234567", "notes": "Need visa by Friday please review"},
            deadline="2025-01-01",
            updated_by="Alice",
        )

    assert result.record["passport_number"] == "X1234567"
    assert result.record["updated_by"] == "Alice"
    assert result.task["note"] == "Need visa by Friday please rev"
    assert result.task["status"] == "pending"

    tasks = await _tasks(sessions)
    assert len(tasks) == 1
    assert tasks[0].client_id == conv.client_id
    assert tasks[0].deadline.date() == date(2025, 1, 1)


async def test_save_without_deadline_adds_no_task(sessions, make_conversation):
    conv = await make_conversation()
    async with sessions() as db:
        result = await SecureRecordLinker(db).save(conv.id, {"notes": "just notes"})

    assert result.task is None
    assert await _tasks(sessions) == []


async def test_record_is_shared_across_a_clients_conversations(sessions, make_conversation):
    client_id = uuid.uuid4()
    first = await make_conversation(client_id=client_id)
    second = await make_conversation(client_id=client_id)

    async with sessions() as db:
        await SecureRecordLinker(db).save(first.id, {"application_id": "APP-9"})
    async with sessions() as db:
        record = await SecureRecordLinker(db).load(second.id)

    assert record["application_id"] == "APP-9"


async def test_last_write_wins(sessions, make_conversation):
    conv = await make_conversation()
    async with sessions() as db:
        await SecureRecordLinker(db).save(conv.id, {"notes": "first", "passport_number": "P1"})
    async with sessions() as db:
        await SecureRecordLinker(db).save(conv.id, {"notes": "second"}, updated_by="Bob")

    async with sessions() as db:
        record = await SecureRecordLinker(db).load(conv.id)
        rows = await db.scalar(select(func.count()).select_from(SecureRecord))

    assert rows == 1
    assert record["notes"] == "second"
    assert record["passport_number"] == ""
    assert record["updated_by"] == "Bob"


async def test_bad_deadline_keeps_the_record(sessions, make_conversation):
    """The record commit stands even when the ribbon task cannot be created."""
    conv = await make_conversation()

    async with sessions() as db:
        with pytest.raises(DeadlineTaskFailed) as exc:
            await SecureRecordLinker(db).save(
                conv.id, {"notes": "call back"}, deadline="someday"
            )

    assert exc.value.record["notes"] == "call back"
    assert exc.value.to_dict()["record_saved"] is True
    assert await _tasks(sessions) == []

    async with sessions() as db:
        record = await SecureRecordLinker(db).load(conv.id)
    assert record["notes"] == "call back"


# ─── Deadline parsing ────────────────────────────────────


@pytest.mark.parametrize(
    "value",
    [
        "2025-01-01",
        date(2025, 1, 1),
        datetime(2025, 1, 1),
        datetime(2025, 1, 1, tzinfo=timezone.utc),
        "2025-01-01T00:00:00+00:00",
    ],
)
def test_parse_deadline_means_midnight_utc(value):
    assert parse_deadline(value) == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_parse_deadline_rejects_garbage():
    with pytest.raises(ValueError):
        parse_deadline("next week")
