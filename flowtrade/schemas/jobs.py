import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    pending = "pending"
    scheduled = "scheduled"
    in_progress = "in_progress"
    on_hold = "on_hold"
    completed = "completed"
    cancelled = "cancelled"
    invoiced = "invoiced"


class JobSchedule(BaseModel):
    scheduled_date: Optional[date] = None
    scheduled_time_start: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    scheduled_time_end: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    assigned_to: Optional[uuid.UUID] = None


class JobCreate(JobSchedule):
    customer_id: uuid.UUID
    site_address: Optional[str] = None
    job_notes: Optional[str] = None
    quoted_total: Decimal = Field(default=Decimal("0"), ge=0)


class JobFromQuote(JobSchedule):
    quote_id: uuid.UUID
    notes: Optional[str] = None


class JobResponse(BaseModel):
    id: uuid.UUID
    job_number: str
    status: JobStatus
    quote_id: Optional[uuid.UUID] = None
    customer_id: uuid.UUID
    site_address: Optional[str] = None
    job_notes: Optional[str] = None
    quoted_total: Decimal
    actual_total: Optional[Decimal] = None
    scheduled_date: Optional[date] = None
    scheduled_time_start: Optional[str] = None
    scheduled_time_end: Optional[str] = None
    assigned_to: Optional[uuid.UUID] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobEnvelope(BaseModel):
    job: JobResponse
    message: Optional[str] = None
