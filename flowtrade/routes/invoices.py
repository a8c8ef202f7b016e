import uuid
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..schemas.activity import ActivityLogResponse
from ..schemas.invoices import InvoiceCreate, InvoiceEnvelope, InvoiceFromJob, InvoiceResponse
from ..schemas.line_items import LineItemChanges
from ..schemas.portal import PortalLink
from ..schemas.quotes import SendResult, StatusUpdate
from ..services.activity import get_activity, record_activity
from ..services.conversion import convert_job_to_invoice
from ..services.documents import create_invoice, get_invoice
from ..services.errors import InvalidStateError, ValidationError
from ..services.line_items import apply_line_item_changes
from ..services.mailer import send_invoice_email
from ..services.portal import issue_token, link_details, portal_url, revoke_tokens
from ..services.transitions import refresh_overdue_invoices, validator


router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("", response_model=InvoiceResponse, status_code=201)
def create(payload: InvoiceCreate, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    return create_invoice(db, payload, user)


@router.post("/from-job", response_model=InvoiceEnvelope, status_code=201)
def from_job(payload: InvoiceFromJob, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    """Invoice a completed job. Repeat calls answer 409 with existing_invoice_id."""
    invoice = convert_job_to_invoice(db, payload.job_id, user)
    return InvoiceEnvelope(invoice=InvoiceResponse.model_validate(invoice))


@router.post("/refresh-overdue")
def refresh_overdue(db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    changed = refresh_overdue_invoices(db, org_id=user.org_id)
    db.commit()
    return {"overdue": len(changed), "invoice_ids": [str(i.id) for i in changed]}


@router.get("/{invoice_id}", response_model=InvoiceResponse)
def read(invoice_id: uuid.UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return get_invoice(db, invoice_id, user.org_id)


@router.patch("/{invoice_id}/status", response_model=InvoiceResponse)
def update_status(
    invoice_id: uuid.UUID,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office")),
):
    invoice = get_invoice(db, invoice_id, user.org_id)
    validator.apply_transition(db, invoice, payload.status, actor=user)
    db.commit()
    db.refresh(invoice)
    return invoice


@router.patch("/{invoice_id}/line-items", response_model=InvoiceResponse)
def edit_line_items(
    invoice_id: uuid.UUID,
    payload: LineItemChanges,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office")),
):
    invoice = get_invoice(db, invoice_id, user.org_id)
    return apply_line_item_changes(db, invoice, payload.changes, actor=user)


@router.post("/{invoice_id}/send", response_model=SendResult)
def send(invoice_id: uuid.UUID, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    invoice = get_invoice(db, invoice_id, user.org_id)
    customer = invoice.customer
    if customer is None or not customer.email:
        raise ValidationError("Customer email is required to send an invoice")

    if invoice.status == "draft":
        validator.apply_transition(db, invoice, "sent", actor=user, details="Invoice sent to customer")
        db.commit()
    elif invoice.status not in ("sent", "viewed", "overdue"):
        raise InvalidStateError(invoice.status, "sent", f"Cannot send an invoice with status '{invoice.status}'")

    link = portal_url(issue_token(db, invoice))
    db.commit()
    email_sent = send_invoice_email(invoice, customer, link)
    if not email_sent:
        record_activity(
            db, "invoice", invoice.id, "email_failed",
            details=f"Invoice email to {customer.email} was not delivered",
            actor_id=user.id, org_id=invoice.org_id,
        )
        db.commit()
    return SendResult(
        status=invoice.status,
        email_sent=email_sent,
        message="Invoice sent" if email_sent else "Invoice marked as sent, email could not be delivered",
        portal_url=link,
    )


@router.post("/{invoice_id}/portal-link", response_model=PortalLink)
def portal_link(
    invoice_id: uuid.UUID,
    regenerate: bool = False,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office")),
):
    invoice = get_invoice(db, invoice_id, user.org_id)
    if regenerate:
        revoke_tokens(db, invoice)
    token = issue_token(db, invoice)
    db.commit()
    return PortalLink(**link_details(token))


@router.get("/{invoice_id}/activity", response_model=List[ActivityLogResponse])
def activity(
    invoice_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    get_invoice(db, invoice_id, user.org_id, refresh=False)
    return get_activity(db, "invoice", invoice_id, limit=limit, offset=offset)
