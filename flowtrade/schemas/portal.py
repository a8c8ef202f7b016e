import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from .invoices import InvoiceStatus
from .line_items import LineItemResponse
from .quotes import DepositType, QuoteStatus


class PortalLink(BaseModel):
    token: str
    token_type: str
    url: str
    expires_at: datetime


class PortalParty(BaseModel):
    name: str
    email: Optional[str] = None


class PortalValidation(BaseModel):
    valid: bool = True
    token_type: str
    resource_id: uuid.UUID
    expires_at: datetime
    organization: PortalParty
    customer: PortalParty


# Customer-facing views leave out internal ids and audit stamps
class PortalQuote(BaseModel):
    quote_number: str
    status: QuoteStatus
    job_site_address: Optional[str] = None
    job_description: Optional[str] = None
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    deposit_type: DepositType
    deposit_amount: Decimal
    valid_until: Optional[date] = None
    line_items: List[LineItemResponse] = []

    class Config:
        from_attributes = True


class PortalInvoice(BaseModel):
    invoice_number: str
    status: InvoiceStatus
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    amount_outstanding: Decimal
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    line_items: List[LineItemResponse] = []

    class Config:
        from_attributes = True


class QuoteDecision(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class PortalActionResult(BaseModel):
    success: bool = True
    status: str
    message: str


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str
    amount: Decimal
