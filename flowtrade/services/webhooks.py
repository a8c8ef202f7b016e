"""
Webhook event ingestion, deduplication and retry.

Every delivery is stored once per (source, event_id). Handler side effects and
the ``processed`` mark commit together; a failing handler leaves nothing
behind except the ``failed`` status, its message and the attempt count, so
the event can be retried from the stored payload.

Only one worker runs a given event at a time. A new event is owned by whoever
inserted it; a failed or stale event must be claimed with a conditional
UPDATE before it is dispatched again, and the loser of that race does nothing.
"""
from datetime import timedelta
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import WebhookEvent, utcnow
from .errors import ExternalDependencyError, FlowTradeError, InvalidStateError, NotFoundError, ValidationError
from .payments import STRIPE_HANDLERS, Handler

logger = structlog.get_logger(__name__)


def event_identity(payload) -> Tuple[str, str]:
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not isinstance(event_id, str):
        raise ValidationError("Webhook payload is missing an event id")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Webhook payload is missing an event type")
    return event_id, event_type


class WebhookProcessor:
    def __init__(self, handlers: Mapping[str, Mapping[str, Handler]], stale_seconds: Optional[int] = None):
        self._handlers = MappingProxyType({source: dict(table) for source, table in handlers.items()})
        self._stale_seconds = stale_seconds

    @property
    def sources(self):
        return frozenset(self._handlers)

    def handler_for(self, source: str, event_type: str) -> Optional[Handler]:
        return self._handlers.get(source, {}).get(event_type)

    def _stale_after(self) -> timedelta:
        seconds = self._stale_seconds if self._stale_seconds is not None else settings.webhook_stale_seconds
        return timedelta(seconds=seconds)

    @staticmethod
    def _find(db: Session, source: str, event_id: str) -> Optional[WebhookEvent]:
        return (
            db.query(WebhookEvent)
            .filter(WebhookEvent.source == source, WebhookEvent.event_id == event_id)
            .first()
        )

    def _claim(self, db: Session, event: WebhookEvent) -> bool:
        """Take a failed or stale event for dispatch. False when another worker holds it."""
        now = utcnow()
        claimable = or_(
            WebhookEvent.status == "failed",
            and_(WebhookEvent.status == "received", WebhookEvent.claimed_at <= now - self._stale_after()),
        )
        result = db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event.id, claimable)
            .values(status="received", claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(event)
        if result.rowcount != 1:
            logger.info("webhook_claim_lost", event_id=event.event_id, status=event.status)
            return False
        return True

    def ingest(self, db: Session, payload: Dict, source: str) -> WebhookEvent:
        """Store and process one delivery; duplicates come back unchanged."""
        event_id, event_type = event_identity(payload)
        event = self._find(db, source, event_id)

        if event is None:
            now = utcnow()
            event = WebhookEvent(
                source=source,
                event_id=event_id,
                event_type=event_type,
                status="received",
                payload=payload,
                attempts=0,
                received_at=now,
                claimed_at=now,
            )
            db.add(event)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("webhook_duplicate_race", source=source, event_id=event_id)
                return self._find(db, source, event_id)
            logger.info("webhook_received", source=source, event_id=event_id, event_type=event_type)
            return self._dispatch(db, event)

        if event.status == "processed":
            logger.info("webhook_duplicate", source=source, event_id=event_id)
            return event
        previous_status = event.status
        if not self._claim(db, event):
            logger.info("webhook_in_flight", source=source, event_id=event_id)
            return event

        logger.info("webhook_redelivered", source=source, event_id=event_id, previous_status=previous_status)
        return self._dispatch(db, event)

    def retry(self, db: Session, event_pk) -> WebhookEvent:
        """Re-run a failed (or stuck) event from its stored payload."""
        event = db.get(WebhookEvent, event_pk)
        if event is None:
            raise NotFoundError("Webhook event not found")
        if event.status == "processed":
            logger.info("webhook_retry_noop", event_id=event.event_id)
            return event
        if not self._claim(db, event):
            if event.status == "processed":
                return event
            raise InvalidStateError(event.status, "retry", "Event is still being processed")
        logger.info("webhook_retry", event_id=event.event_id, attempts=event.attempts)
        return self._dispatch(db, event)

    def _dispatch(self, db: Session, event: WebhookEvent) -> WebhookEvent:
        event_pk = event.id
        handler = self.handler_for(event.source, event.event_type)
        try:
            if handler is None:
                logger.info("webhook_unhandled_event", source=event.source, event_type=event.event_type)
            else:
                handler(db, event.payload)
            event.status = "processed"
            event.error_message = None
            event.processed_at = utcnow()
            event.attempts = (event.attempts or 0) + 1
            db.commit()
        except Exception as e:
            failure = e if isinstance(e, FlowTradeError) else ExternalDependencyError(str(e) or e.__class__.__name__)
            db.rollback()
            # A concurrent run may already have processed the event
            result = db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_pk, WebhookEvent.status != "processed")
                .values(
                    status="failed",
                    error_message=failure.message,
                    attempts=WebhookEvent.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            event = db.get(WebhookEvent, event_pk)
            if result.rowcount != 1:
                logger.info("webhook_failure_superseded", event_id=event.event_id, error=failure.message)
            else:
                logger.warning(
                    "webhook_handler_failed",
                    source=event.source,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    attempts=event.attempts,
                    error=failure.message,
                    error_type=failure.__class__.__name__,
                )
        else:
            logger.info("webhook_processed", source=event.source, event_id=event.event_id, event_type=event.event_type)
        db.refresh(event)
        return event


def list_events(db: Session, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[WebhookEvent]:
    query = db.query(WebhookEvent)
    if status:
        query = query.filter(WebhookEvent.status == status)
    return query.order_by(WebhookEvent.received_at.desc()).limit(limit).offset(offset).all()


processor = WebhookProcessor({"stripe": STRIPE_HANDLERS})
