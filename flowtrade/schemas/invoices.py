import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .line_items import LineItemBase, LineItemResponse


class InvoiceStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    viewed = "viewed"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


class InvoiceCreate(BaseModel):
    customer_id: uuid.UUID
    tax_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    line_items: List[LineItemBase] = []


class InvoiceFromJob(BaseModel):
    job_id: uuid.UUID


class PaymentResponse(BaseModel):
    id: uuid.UUID
    amount: Decimal
    method: str
    status: str
    provider_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: uuid.UUID
    invoice_number: str
    status: InvoiceStatus
    job_id: Optional[uuid.UUID] = None
    customer_id: uuid.UUID
    tax_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    amount_outstanding: Decimal
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    line_items: List[LineItemResponse] = []
    payments: List[PaymentResponse] = []

    class Config:
        from_attributes = True


class InvoiceEnvelope(BaseModel):
    invoice: InvoiceResponse
