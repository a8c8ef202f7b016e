"""
Provider signature checks for inbound webhooks.

Stripe deliveries are verified with the Stripe SDK against the endpoint
secret. Verification is skipped when no secret is configured.
"""
from typing import Optional

import stripe
import structlog

from .errors import ValidationError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def verify_stripe_signature(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = 300,
) -> bool:
    """
    Returns False when no secret is configured and True when the signature
    matches. Raises ValidationError otherwise.
    """
    if not secret:
        return False
    if not header:
        raise ValidationError("Missing stripe-signature header")
    try:
        stripe.Webhook.construct_event(payload, header, secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as e:
        logger.warning("webhook_signature_rejected", error=str(e))
        raise ValidationError(f"Webhook signature verification failed: {e}")
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    return True
