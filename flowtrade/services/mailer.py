"""
Best-effort outbound email for quote and invoice sends.

Delivery runs after the status change has committed; a failure is logged and
reported to the caller but never undoes the transition.
"""
import smtplib
from email.message import EmailMessage
from typing import Optional

import structlog

from ..config import settings

logger = structlog.get_logger(__name__)


def email_configured() -> bool:
    return bool(settings.enable_email and settings.smtp_host and settings.mail_from)


def send_email(to: str, subject: str, body: str, reply_to: Optional[str] = None) -> bool:
    """Returns True when the message was handed to the SMTP server."""
    if not email_configured():
        logger.info("email_not_configured", to=to, subject=subject)
        return False
    try:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.mail_from
        msg["To"] = to
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.set_content(body)
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds) as s:
            if settings.smtp_tls:
                s.starttls()
            if settings.smtp_username and settings.smtp_password:
                s.login(settings.smtp_username, settings.smtp_password)
            s.send_message(msg)
    except Exception as e:
        logger.warning("email_send_failed", to=to, subject=subject, error=str(e))
        return False
    logger.info("email_sent", to=to, subject=subject)
    return True


def send_quote_email(quote, customer, portal_link: str) -> bool:
    body = (
        f"Hi {customer.name},\n\n"
        f"Please find your quote {quote.quote_number} for {quote.total}.\n"
        f"View, accept or decline it online: {portal_link}\n"
    )
    if quote.valid_until:
        body += f"\nThis quote is valid until {quote.valid_until.isoformat()}.\n"
    return send_email(customer.email, f"Quote {quote.quote_number} from {settings.app_name}", body)


def send_invoice_email(invoice, customer, portal_link: str) -> bool:
    body = (
        f"Hi {customer.name},\n\n"
        f"Invoice {invoice.invoice_number} for {invoice.total} is ready.\n"
        f"Amount outstanding: {invoice.amount_outstanding}\n"
        f"View and pay online: {portal_link}\n"
    )
    if invoice.due_date:
        body += f"\nPayment is due by {invoice.due_date.isoformat()}.\n"
    return send_email(customer.email, f"Invoice {invoice.invoice_number} from {settings.app_name}", body)
