import uuid
from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..schemas.activity import ActivityLogResponse
from ..schemas.line_items import LineItemChanges
from ..schemas.portal import PortalLink
from ..schemas.quotes import QuoteCreate, QuoteResponse, SendResult, StatusUpdate
from ..services.activity import get_activity, record_activity
from ..services.documents import create_quote, get_quote
from ..services.errors import InvalidStateError, ValidationError
from ..services.line_items import apply_line_item_changes
from ..services.mailer import send_quote_email
from ..services.portal import issue_token, link_details, portal_url, revoke_tokens
from ..services.transitions import expire_stale_quotes, validator


router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.post("", response_model=QuoteResponse, status_code=201)
def create(payload: QuoteCreate, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    return create_quote(db, payload, user)


@router.post("/expire-stale")
def expire_stale(db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    """Move sent/viewed quotes past their validity date to expired"""
    expired = expire_stale_quotes(db, org_id=user.org_id)
    db.commit()
    return {"expired": len(expired), "quote_ids": [str(q.id) for q in expired]}


@router.get("/{quote_id}", response_model=QuoteResponse)
def read(quote_id: uuid.UUID, db: Session = Depends(get_db), user=Depends(get_current_user)):
    return get_quote(db, quote_id, user.org_id)


@router.patch("/{quote_id}/status", response_model=QuoteResponse)
def update_status(
    quote_id: uuid.UUID,
    payload: StatusUpdate,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office")),
):
    quote = get_quote(db, quote_id, user.org_id)
    validator.apply_transition(db, quote, payload.status, actor=user)
    db.commit()
    db.refresh(quote)
    return quote


@router.patch("/{quote_id}/line-items", response_model=QuoteResponse)
def edit_line_items(
    quote_id: uuid.UUID,
    payload: LineItemChanges,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office")),
):
    quote = get_quote(db, quote_id, user.org_id)
    return apply_line_item_changes(db, quote, payload.changes, actor=user)


@router.post("/{quote_id}/send", response_model=SendResult)
def send(quote_id: uuid.UUID, db: Session = Depends(get_db), user=Depends(require_roles("office"))):
    """
    Mark the quote sent and email it to the customer.

    A draft moves to sent and the change is committed before the email goes
    out; sent/viewed quotes are simply re-sent. Delivery failure is reported in
    the response and logged on the quote, the status stays.
    """
    quote = get_quote(db, quote_id, user.org_id)
    customer = quote.customer
    if customer is None or not customer.email:
        raise ValidationError("Customer email is required to send a quote")

    if quote.status == "draft":
        validator.apply_transition(db, quote, "sent", actor=user, details="Quote sent to customer")
        db.commit()
    elif quote.status not in ("sent", "viewed"):
        raise InvalidStateError(quote.status, "sent", f"Cannot send a quote with status '{quote.status}'")

    link = portal_url(issue_token(db, quote))
    db.commit()
    email_sent = send_quote_email(quote, customer, link)
    if not email_sent:
        record_activity(
            db, "quote", quote.id, "email_failed",
            details=f"Quote email to {customer.email} was not delivered",
            actor_id=user.id, org_id=quote.org_id,
        )
        db.commit()
    return SendResult(
        status=quote.status,
        email_sent=email_sent,
        message="Quote sent" if email_sent else "Quote marked as sent, email could not be delivered",
        portal_url=link,
    )


@router.post("/{quote_id}/portal-link", response_model=PortalLink)
def portal_link(
    quote_id: uuid.UUID,
    regenerate: bool = False,
    db: Session = Depends(get_db),
    user=Depends(require_roles("office")),
):
    """Customer link for a sent quote. ``regenerate`` revokes the live links first"""
    quote = get_quote(db, quote_id, user.org_id)
    if regenerate:
        revoke_tokens(db, quote)
    token = issue_token(db, quote)
    db.commit()
    return PortalLink(**link_details(token))


@router.get("/{quote_id}/activity", response_model=List[ActivityLogResponse])
def activity(
    quote_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    get_quote(db, quote_id, user.org_id, refresh=False)
    return get_activity(db, "quote", quote_id, limit=limit, offset=offset)
