import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .line_items import LineItemBase, LineItemResponse


class QuoteStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    viewed = "viewed"
    accepted = "accepted"
    declined = "declined"
    expired = "expired"


class DepositType(str, Enum):
    none = "none"
    amount = "amount"
    percentage = "percentage"


class QuoteCreate(BaseModel):
    customer_id: uuid.UUID
    job_site_address: Optional[str] = None
    job_description: Optional[str] = None
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    deposit_type: DepositType = DepositType.none
    deposit_value: Decimal = Field(default=Decimal("0"), ge=0)
    valid_until: Optional[date] = None
    line_items: List[LineItemBase] = []


class QuoteResponse(BaseModel):
    id: uuid.UUID
    quote_number: str
    status: QuoteStatus
    customer_id: uuid.UUID
    job_site_address: Optional[str] = None
    job_description: Optional[str] = None
    tax_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    deposit_type: DepositType
    deposit_value: Decimal
    deposit_amount: Decimal
    valid_until: Optional[date] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    line_items: List[LineItemResponse] = []

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: str


class SendResult(BaseModel):
    status: str
    email_sent: bool
    message: Optional[str] = None
    portal_url: Optional[str] = None
