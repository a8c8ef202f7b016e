import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class WebhookEventStatus(str, Enum):
    received = "received"
    processed = "processed"
    failed = "failed"


class WebhookEventResponse(BaseModel):
    id: uuid.UUID
    source: str
    event_id: str
    event_type: str
    status: WebhookEventStatus
    error_message: Optional[str] = None
    attempts: int
    received_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookEventDetail(WebhookEventResponse):
    payload: dict


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    status: WebhookEventStatus
