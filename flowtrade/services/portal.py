"""
Customer portal links.

A portal token opens exactly one quote or invoice to the customer without a
login. Through it the customer can view the document, accept or decline a
quote, and start a card payment for an invoice. Status changes go through the
same transition rules as staff changes, tagged with the ``customer_portal``
source.
"""
import secrets
from datetime import timedelta
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Invoice, Payment, PortalToken, Quote, as_utc, utcnow
from .errors import InvalidStateError, LinkExpiredError, NotFoundError, ValidationError
from .payments import create_checkout_session
from .transitions import refresh_overdue, refresh_quote_expiry, validator

logger = structlog.get_logger(__name__)

PORTAL_SOURCE = "customer_portal"
DOCUMENT_MODELS = {"quote": Quote, "invoice": Invoice}
DECIDABLE_QUOTE_STATUSES = frozenset({"sent", "viewed"})
PAYABLE_INVOICE_STATUSES = frozenset({"sent", "viewed", "overdue"})


def _token_type(document) -> str:
    if isinstance(document, Quote):
        return "quote"
    if isinstance(document, Invoice):
        return "invoice"
    raise TypeError(f"Portal links are not supported on {type(document).__name__}")


def _live_tokens(db: Session, token_type: str, resource_id):
    return db.query(PortalToken).filter(
        PortalToken.token_type == token_type,
        PortalToken.resource_id == resource_id,
        PortalToken.is_revoked.is_(False),
    )


def portal_url(token: PortalToken) -> str:
    return f"{settings.public_base_url}/portal/{token.token_type}/{token.token}"


def link_details(token: PortalToken) -> Dict:
    return {
        "token": token.token,
        "token_type": token.token_type,
        "url": portal_url(token),
        "expires_at": token.expires_at,
    }


def issue_token(db: Session, document, expires_in_days: Optional[int] = None) -> PortalToken:
    """
    Return a live link for ``document``, creating one when none exists.

    Drafts cannot be shared. The session is flushed, not committed.
    """
    token_type = _token_type(document)
    if document.status == "draft":
        raise InvalidStateError(document.status, "share", f"A draft {token_type} cannot be shared")

    now = utcnow()
    existing = (
        _live_tokens(db, token_type, document.id)
        .filter(PortalToken.expires_at > now)
        .order_by(PortalToken.expires_at.desc())
        .first()
    )
    if existing is not None:
        return existing

    if expires_in_days is None:
        expires_in_days = settings.portal_quote_days if token_type == "quote" else settings.portal_invoice_days
    token = PortalToken(
        org_id=document.org_id,
        customer_id=document.customer_id,
        token=secrets.token_urlsafe(32),
        token_type=token_type,
        resource_id=document.id,
        expires_at=now + timedelta(days=expires_in_days),
    )
    db.add(token)
    db.flush()
    logger.info("portal_token_issued", token_type=token_type, resource_id=str(document.id), expires_at=token.expires_at.isoformat())
    return token


def revoke_tokens(db: Session, document) -> int:
    token_type = _token_type(document)
    revoked = _live_tokens(db, token_type, document.id).update({"is_revoked": True}, synchronize_session=False)
    logger.info("portal_tokens_revoked", token_type=token_type, resource_id=str(document.id), count=revoked)
    return revoked


def resolve_token(db: Session, value: str, token_type: Optional[str] = None) -> PortalToken:
    """Look up a link and count the access. Unknown links are 404, dead ones 410."""
    token = db.query(PortalToken).filter(PortalToken.token == value).first()
    if token is None or (token_type is not None and token.token_type != token_type):
        raise NotFoundError("Link not found")
    if token.is_revoked:
        raise LinkExpiredError("This link has been revoked")
    if as_utc(token.expires_at) <= utcnow():
        raise LinkExpiredError("This link has expired")
    token.access_count = (token.access_count or 0) + 1
    token.last_accessed_at = utcnow()
    return token


def _document_for(db: Session, token: PortalToken):
    document = db.get(DOCUMENT_MODELS[token.token_type], token.resource_id)
    if document is None or document.org_id != token.org_id:
        raise NotFoundError(f"{token.token_type.capitalize()} not found")
    return document


def describe_link(db: Session, value: str) -> Tuple[PortalToken, object]:
    token = resolve_token(db, value)
    document = _document_for(db, token)
    db.commit()
    return token, document


def view_quote(db: Session, value: str, client_ip: Optional[str] = None) -> Quote:
    """Open a quote; the first view of a sent quote moves it to viewed."""
    token = resolve_token(db, value, "quote")
    quote = _document_for(db, token)
    refresh_quote_expiry(db, quote)
    if quote.status == "sent":
        validator.apply_transition(db, quote, "viewed", source=PORTAL_SOURCE, details="Viewed by customer via portal")
    db.commit()
    logger.info("portal_access", action="view_quote", token_id=str(token.id), client_ip=client_ip)
    db.refresh(quote)
    return quote


def view_invoice(db: Session, value: str, client_ip: Optional[str] = None) -> Invoice:
    token = resolve_token(db, value, "invoice")
    invoice = _document_for(db, token)
    refresh_overdue(db, invoice)
    if invoice.status == "sent":
        validator.apply_transition(db, invoice, "viewed", source=PORTAL_SOURCE, details="Viewed by customer via portal")
    db.commit()
    logger.info("portal_access", action="view_invoice", token_id=str(token.id), client_ip=client_ip)
    db.refresh(invoice)
    return invoice


def _decide_quote(db: Session, value: str, target: str, verb: str, details: str, client_ip: Optional[str]) -> Quote:
    token = resolve_token(db, value, "quote")
    quote = _document_for(db, token)
    refresh_quote_expiry(db, quote)
    if quote.status not in DECIDABLE_QUOTE_STATUSES:
        db.commit()
        raise InvalidStateError(quote.status, target, f"Cannot {verb} a quote with status: {quote.status}")
    validator.apply_transition(db, quote, target, source=PORTAL_SOURCE, details=details)
    db.commit()
    logger.info("portal_access", action=f"{verb}_quote", token_id=str(token.id), client_ip=client_ip)
    db.refresh(quote)
    return quote


def accept_quote(db: Session, value: str, client_ip: Optional[str] = None) -> Quote:
    return _decide_quote(db, value, "accepted", "accept", "Accepted by customer via portal", client_ip)


def decline_quote(db: Session, value: str, reason: Optional[str] = None, client_ip: Optional[str] = None) -> Quote:
    details = "Declined by customer via portal"
    if reason:
        details = f"{details}: {reason}"
    return _decide_quote(db, value, "declined", "decline", details, client_ip)


def start_invoice_payment(db: Session, value: str, client_ip: Optional[str] = None) -> Tuple[Payment, str]:
    """Create a checkout session for the invoice behind ``value``. Returns (payment, checkout url)."""
    token = resolve_token(db, value, "invoice")
    invoice = _document_for(db, token)
    refresh_overdue(db, invoice)
    db.commit()
    if invoice.status == "paid" or invoice.amount_outstanding <= 0:
        raise ValidationError("This invoice has already been paid")
    if invoice.status not in PAYABLE_INVOICE_STATUSES:
        raise InvalidStateError(invoice.status, "paid", "This invoice is no longer payable")

    payment, url = create_checkout_session(db, invoice, portal_url(token))
    db.commit()
    logger.info("portal_access", action="initiate_payment", token_id=str(token.id), client_ip=client_ip)
    return payment, url
