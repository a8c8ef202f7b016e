import json
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..config import settings
from ..db import get_db
from ..schemas.webhooks import WebhookAck, WebhookEventDetail, WebhookEventResponse, WebhookEventStatus
from ..services.errors import NotFoundError, ValidationError
from ..services.webhook_signatures import SIGNATURE_HEADER, verify_stripe_signature
from ..services.webhooks import list_events, processor


router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_CHECKS = {
    "stripe": lambda body, headers: verify_stripe_signature(
        body,
        headers.get(SIGNATURE_HEADER),
        settings.stripe_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    ),
}


@router.get("/events", response_model=List[WebhookEventResponse])
def events(
    status: Optional[WebhookEventStatus] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    _=Depends(require_roles("admin")),
):
    return list_events(db, status=status.value if status else None, limit=limit, offset=offset)


@router.post("/events/{event_pk}/retry", response_model=WebhookEventDetail)
def retry(event_pk: uuid.UUID, db: Session = Depends(get_db), _=Depends(require_roles("admin"))):
    """Operator action: re-run a failed event from its stored payload"""
    return processor.retry(db, event_pk)


@router.post("/{source}", response_model=WebhookAck)
async def receive(source: str, request: Request, db: Session = Depends(get_db)):
    """
    Provider delivery endpoint.

    Bad signatures and malformed payloads are rejected with 400. Anything that
    gets stored is acknowledged with 200, including handler failures, which
    stay on the event for an explicit retry.
    """
    if source not in processor.sources:
        raise NotFoundError(f"Unknown webhook source '{source}'")
    body = await request.body()
    check = SIGNATURE_CHECKS.get(source)
    if check is not None:
        check(body, request.headers)
    try:
        payload = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    event = processor.ingest(db, payload, source)
    return WebhookAck(event_id=event.event_id, status=event.status)
