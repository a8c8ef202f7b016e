"""
Customer portal: token-scoped, unauthenticated access to one quote or invoice.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import Organization
from ..ratelimit import limiter
from ..schemas.portal import (
    CheckoutSessionResponse,
    PortalActionResult,
    PortalInvoice,
    PortalParty,
    PortalQuote,
    PortalValidation,
    QuoteDecision,
)
from ..services import portal


router = APIRouter(prefix="/portal", tags=["portal"])


def _portal_limit() -> str:
    return settings.portal_rate_limit


@router.get("/validate/{token}", response_model=PortalValidation)
@limiter.limit(_portal_limit)
def validate(token: str, request: Request, db: Session = Depends(get_db)):
    link, document = portal.describe_link(db, token)
    organization = db.get(Organization, link.org_id)
    customer = document.customer
    return PortalValidation(
        token_type=link.token_type,
        resource_id=link.resource_id,
        expires_at=link.expires_at,
        organization=PortalParty(name=organization.name),
        customer=PortalParty(name=customer.name, email=customer.email),
    )


@router.get("/quotes/{token}", response_model=PortalQuote)
@limiter.limit(_portal_limit)
def view_quote(token: str, request: Request, db: Session = Depends(get_db)):
    return portal.view_quote(db, token, client_ip=get_remote_address(request))


@router.post("/quotes/{token}/accept", response_model=PortalActionResult)
@limiter.limit(_portal_limit)
def accept_quote(token: str, request: Request, db: Session = Depends(get_db)):
    quote = portal.accept_quote(db, token, client_ip=get_remote_address(request))
    return PortalActionResult(status=quote.status, message="Quote accepted successfully")


@router.post("/quotes/{token}/decline", response_model=PortalActionResult)
@limiter.limit(_portal_limit)
def decline_quote(
    token: str,
    request: Request,
    payload: Optional[QuoteDecision] = None,
    db: Session = Depends(get_db),
):
    reason = payload.reason if payload is not None else None
    quote = portal.decline_quote(db, token, reason=reason, client_ip=get_remote_address(request))
    return PortalActionResult(status=quote.status, message="Quote declined")


@router.get("/invoices/{token}", response_model=PortalInvoice)
@limiter.limit(_portal_limit)
def view_invoice(token: str, request: Request, db: Session = Depends(get_db)):
    return portal.view_invoice(db, token, client_ip=get_remote_address(request))


@router.post("/invoices/{token}/pay", response_model=CheckoutSessionResponse)
@limiter.limit(_portal_limit)
def pay_invoice(token: str, request: Request, db: Session = Depends(get_db)):
    """Start a Stripe Checkout session; the client redirects to ``url``."""
    payment, url = portal.start_invoice_payment(db, token, client_ip=get_remote_address(request))
    return CheckoutSessionResponse(session_id=payment.provider_session_id, url=url, amount=payment.amount)
