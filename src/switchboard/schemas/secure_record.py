"""Pydantic schemas for secure records and the deadline ribbon."""

import uuid
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, Field


class SecureRecordSave(BaseModel):
    """Full replacement of a client's record. `deadline` adds a ribbon task."""
    passport_number: str = Field(default="", max_length=64)
    application_id: str = Field(default="", max_length=64)
    notes: str = Field(default="")
    deadline: Optional[Union[datetime, date]] = None

    def fields(self) -> dict[str, str]:
        return self.model_dump(exclude={"deadline"})


class SecureRecordRead(BaseModel):
    client_id: Optional[uuid.UUID] = None
    passport_number: str = ""
    application_id: str = ""
    notes: str = ""
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class DeadlineTaskRead(BaseModel):
    id: int
    client_id: uuid.UUID
    note: str
    deadline: datetime
    status: str
    created_by: Optional[str] = None
    created_at: datetime
    urgent: bool = False


class SecureRecordSaved(BaseModel):
    record: SecureRecordRead
    task: Optional[DeadlineTaskRead] = None


class MissedCallRead(BaseModel):
    id: int
    client_id: Optional[uuid.UUID] = None
    status: str
    created_at: datetime
