import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ActivityLogResponse(BaseModel):
    id: uuid.UUID
    entity_type: str
    entity_id: uuid.UUID
    action: str
    details: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="metadata_json")
    actor_id: Optional[uuid.UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True
