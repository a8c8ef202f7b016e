"""
Stripe payments: Checkout session creation and payment event handlers.

Handlers receive the stored event payload and only stage changes on the
session; the webhook processor commits them together with the event status.
"""
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Optional, Tuple

import stripe
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Invoice, Payment, utcnow
from .activity import record_activity
from .errors import ExternalDependencyError, NotFoundError, PaymentsUnavailableError, ValidationError
from .totals import to_decimal, to_money
from .transitions import validator

logger = structlog.get_logger(__name__)

Handler = Callable[[Session, Dict], None]


def _event_object(payload: Dict) -> Dict:
    obj = (payload.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise ValidationError("Event payload has no data.object")
    return obj


def _from_cents(value) -> Optional[Decimal]:
    if value is None:
        return None
    return to_money(to_decimal(value) / 100)


def _invoice_from_metadata(db: Session, obj: Dict) -> Invoice:
    raw_id = (obj.get("metadata") or {}).get("invoice_id")
    if not raw_id:
        raise ValidationError("No invoice_id in event metadata")
    try:
        invoice_id = uuid.UUID(str(raw_id))
    except ValueError:
        raise ValidationError(f"Invalid invoice_id '{raw_id}' in event metadata")
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {raw_id} not found")
    return invoice


def _find_payment(db: Session, provider_payment_id: Optional[str], session_id: Optional[str]) -> Optional[Payment]:
    if provider_payment_id:
        payment = db.query(Payment).filter(Payment.provider_payment_id == provider_payment_id).first()
        if payment:
            return payment
    if session_id:
        return db.query(Payment).filter(Payment.provider_session_id == session_id).first()
    return None


def record_payment(
    db: Session,
    invoice: Invoice,
    amount: Optional[Decimal],
    provider_payment_id: Optional[str] = None,
    session_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Optional[Payment]:
    """
    Complete a payment against ``invoice`` and settle it when fully paid.

    Returns None when the provider payment was already recorded as completed.
    """
    payment = _find_payment(db, provider_payment_id, session_id)
    if payment is not None and payment.status == "completed":
        logger.info("payment_already_recorded", invoice_id=str(invoice.id), provider_payment_id=provider_payment_id)
        return None

    if amount is None:
        amount = invoice.amount_outstanding
    elif amount <= 0:
        raise ExternalDependencyError(f"Provider reported a non-positive amount ({amount})")
    if payment is None:
        payment = Payment(invoice_id=invoice.id, method="stripe", provider_session_id=session_id)
        db.add(payment)
    payment.amount = amount
    payment.status = "completed"
    payment.paid_at = utcnow()
    if provider_payment_id:
        payment.provider_payment_id = provider_payment_id

    invoice.amount_paid = to_money(to_decimal(invoice.amount_paid) + amount)
    invoice.updated_at = utcnow()
    db.flush()

    record_activity(
        db, "invoice", invoice.id, "payment_received",
        details=f"Payment of {amount} received",
        metadata={
            "amount": str(amount),
            "payment_method": "stripe",
            "provider_payment_id": provider_payment_id,
            "provider_session_id": session_id,
            "event_id": event_id,
        },
        org_id=invoice.org_id,
    )
    if invoice.amount_paid >= invoice.total and invoice.status != "paid":
        validator.apply_transition(db, invoice, "paid", source="webhook", system=True)
    return payment


def _to_cents(amount: Decimal) -> int:
    return int((to_decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def create_checkout_session(db: Session, invoice: Invoice, return_url: str) -> Tuple[Payment, str]:
    """
    Open a Stripe Checkout session for the outstanding balance.

    A pending Payment carrying the session id is staged on the session; the
    checkout webhooks later complete or expire that same row. Returns the
    payment and the hosted checkout URL.
    """
    if not settings.stripe_secret_key:
        raise PaymentsUnavailableError("Payment processing is not configured")
    amount = invoice.amount_outstanding
    if amount <= 0:
        raise ValidationError("This invoice has already been paid")

    metadata = {
        "invoice_id": str(invoice.id),
        "org_id": str(invoice.org_id),
        "invoice_number": invoice.invoice_number,
    }
    params = dict(
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": settings.stripe_currency,
                "product_data": {"name": f"Invoice {invoice.invoice_number}"},
                "unit_amount": _to_cents(amount),
            },
            "quantity": 1,
        }],
        mode="payment",
        success_url=f"{return_url}?payment=success",
        cancel_url=f"{return_url}?payment=cancelled",
        metadata=metadata,
        payment_intent_data={"metadata": metadata},
    )
    if invoice.customer is not None and invoice.customer.email:
        params["customer_email"] = invoice.customer.email

    stripe.api_key = settings.stripe_secret_key
    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.error("checkout_session_failed", invoice_id=str(invoice.id), error=str(e))
        raise ExternalDependencyError("Failed to create payment session")

    payment = Payment(
        invoice_id=invoice.id,
        amount=amount,
        method="stripe",
        status="pending",
        provider_session_id=session.id,
    )
    db.add(payment)
    db.flush()
    record_activity(
        db, "invoice", invoice.id, "payment_initiated",
        details=f"Card payment of {amount} started",
        metadata={"amount": str(amount), "provider_session_id": session.id},
        org_id=invoice.org_id,
    )
    logger.info("checkout_session_created", invoice_id=str(invoice.id), session_id=session.id, amount=str(amount))
    return payment, session.url


def handle_checkout_completed(db: Session, payload: Dict) -> None:
    session = _event_object(payload)
    invoice = _invoice_from_metadata(db, session)
    record_payment(
        db, invoice,
        amount=_from_cents(session.get("amount_total")),
        provider_payment_id=session.get("payment_intent"),
        session_id=session.get("id"),
        event_id=payload.get("id"),
    )


def handle_payment_succeeded(db: Session, payload: Dict) -> None:
    intent = _event_object(payload)
    invoice = _invoice_from_metadata(db, intent)
    amount = intent.get("amount_received")
    if amount is None:
        amount = intent.get("amount")
    record_payment(
        db, invoice,
        amount=_from_cents(amount),
        provider_payment_id=intent.get("id"),
        event_id=payload.get("id"),
    )


def handle_checkout_expired(db: Session, payload: Dict) -> None:
    session = _event_object(payload)
    session_id = session.get("id")
    payments = (
        db.query(Payment)
        .filter(Payment.provider_session_id == session_id, Payment.status == "pending")
        .all()
    )
    for payment in payments:
        payment.status = "expired"
    db.flush()
    logger.info("checkout_session_expired", session_id=session_id, payments=len(payments))


def handle_payment_failed(db: Session, payload: Dict) -> None:
    intent = _event_object(payload)
    intent_id = intent.get("id")
    payment = _find_payment(db, intent_id, None)
    if payment is not None and payment.status != "completed":
        payment.status = "failed"
        db.flush()

    invoice = payment.invoice if payment is not None else None
    if invoice is None and (intent.get("metadata") or {}).get("invoice_id"):
        invoice = _invoice_from_metadata(db, intent)
    if invoice is None:
        logger.info("payment_failed_unmatched", provider_payment_id=intent_id)
        return

    error = intent.get("last_payment_error") or {}
    record_activity(
        db, "invoice", invoice.id, "payment_failed",
        details=error.get("message") or "Payment failed",
        metadata={"provider_payment_id": intent_id, "event_id": payload.get("id")},
        org_id=invoice.org_id,
    )
    logger.warning("payment_failed", invoice_id=str(invoice.id), provider_payment_id=intent_id)


STRIPE_HANDLERS: Dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.succeeded": handle_payment_succeeded,
    "checkout.session.expired": handle_checkout_expired,
    "payment_intent.payment_failed": handle_payment_failed,
}
