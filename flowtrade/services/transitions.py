"""
Status transition rules for quotes, jobs and invoices.

Each entity type has one immutable StateMachine. Terminal states are declared
explicitly; a state with no outgoing transitions that is not declared terminal
is rejected when the machine is built. Derived states (quote ``expired``,
invoice ``overdue``) are entered by the system sweeps only, never requested by
a caller.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import pytz
import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Invoice, Job, Quote, utcnow
from .activity import record_activity
from .errors import InvalidStateError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StateMachine:
    entity_type: str
    initial: str
    transitions: Mapping[str, FrozenSet[str]]
    terminal: FrozenSet[str]
    derived: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        states = set(self.transitions)
        if self.initial not in states:
            raise ValueError(f"{self.entity_type}: unknown initial state {self.initial}")
        for state, targets in self.transitions.items():
            unknown = set(targets) - states
            if unknown:
                raise ValueError(f"{self.entity_type}: {state} targets unknown states {sorted(unknown)}")
            if state in self.terminal and targets:
                raise ValueError(f"{self.entity_type}: terminal state {state} has transitions")
            if state not in self.terminal and not targets:
                raise ValueError(f"{self.entity_type}: {state} has no transitions and is not terminal")
        if not set(self.terminal) <= states or not set(self.derived) <= states:
            raise ValueError(f"{self.entity_type}: terminal/derived states must be known states")

    @property
    def states(self) -> FrozenSet[str]:
        return frozenset(self.transitions)

    def allowed_targets(self, current: str) -> FrozenSet[str]:
        return self.transitions.get(current, frozenset())

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.allowed_targets(current)

    def is_terminal(self, status: str) -> bool:
        return status in self.terminal


def build_machine(
    entity_type: str,
    initial: str,
    table: Dict[str, Iterable[str]],
    terminal: Iterable[str],
    derived: Iterable[str] = (),
) -> StateMachine:
    frozen = MappingProxyType({state: frozenset(targets) for state, targets in table.items()})
    return StateMachine(
        entity_type=entity_type,
        initial=initial,
        transitions=frozen,
        terminal=frozenset(terminal),
        derived=frozenset(derived),
    )


QUOTE_MACHINE = build_machine(
    "quote",
    initial="draft",
    table={
        "draft": {"sent", "accepted", "declined"},
        "sent": {"viewed", "accepted", "declined", "expired"},
        "viewed": {"accepted", "declined", "expired"},
        "accepted": set(),
        "declined": set(),
        "expired": set(),
    },
    terminal={"accepted", "declined", "expired"},
    derived={"expired"},
)

JOB_MACHINE = build_machine(
    "job",
    initial="scheduled",
    table={
        "pending": {"scheduled", "cancelled"},
        "scheduled": {"in_progress", "cancelled"},
        "in_progress": {"on_hold", "completed", "cancelled"},
        "on_hold": {"in_progress", "cancelled"},
        "completed": {"invoiced"},
        "invoiced": set(),
        "cancelled": set(),
    },
    terminal={"invoiced", "cancelled"},
)

INVOICE_MACHINE = build_machine(
    "invoice",
    initial="draft",
    table={
        "draft": {"sent", "cancelled"},
        "sent": {"viewed", "paid", "overdue", "cancelled"},
        "viewed": {"paid", "overdue", "cancelled"},
        "overdue": {"paid", "cancelled"},
        "paid": set(),
        "cancelled": set(),
    },
    terminal={"paid", "cancelled"},
    derived={"overdue"},
)


# Field stamping per entity type, keyed by the status being entered
def _stamp_quote(quote: Quote, target: str, now: datetime) -> None:
    if target == "sent" and not quote.sent_at:
        quote.sent_at = now
    elif target == "viewed" and not quote.viewed_at:
        quote.viewed_at = now
    elif target == "accepted":
        quote.accepted_at = now
    elif target == "declined":
        quote.declined_at = now


def _stamp_job(job: Job, target: str, now: datetime) -> None:
    if target == "in_progress" and not job.actual_start:
        job.actual_start = now
    elif target == "completed":
        job.completed_at = now
        if not job.actual_end:
            job.actual_end = now


def _stamp_invoice(invoice: Invoice, target: str, now: datetime) -> None:
    if target == "sent" and not invoice.sent_at:
        invoice.sent_at = now
    elif target == "paid":
        invoice.paid_at = now
        if (invoice.amount_paid or 0) < (invoice.total or 0):
            invoice.amount_paid = invoice.total


ENTITY_TYPES: Dict[type, Tuple[str, Callable]] = {
    Quote: ("quote", _stamp_quote),
    Job: ("job", _stamp_job),
    Invoice: ("invoice", _stamp_invoice),
}


class TransitionValidator:
    """Checks and applies status changes against the configured machines."""

    def __init__(self, machines: Mapping[str, StateMachine]):
        self._machines = MappingProxyType(dict(machines))

    def machine(self, entity_type: str) -> StateMachine:
        try:
            return self._machines[entity_type]
        except KeyError:
            raise ValueError(f"No state machine for entity type {entity_type}")

    def can_transition(self, entity_type: str, current: str, target: str) -> bool:
        return self.machine(entity_type).can_transition(current, target)

    def apply_transition(
        self,
        db: Session,
        entity,
        target: str,
        actor=None,
        source: str = "app",
        system: bool = False,
        details: Optional[str] = None,
    ):
        """
        Move ``entity`` to ``target`` and record the change.

        Raises InvalidStateError without touching the entity when the target is
        not reachable from the current status, or when a caller asks for a
        derived status. The session is flushed, not committed.
        """
        entity_type, stamp = ENTITY_TYPES[type(entity)]
        machine = self.machine(entity_type)
        current = entity.status

        if target not in machine.states:
            raise InvalidStateError(current, target, f"Unknown {entity_type} status '{target}'")
        if not machine.can_transition(current, target):
            raise InvalidStateError(current, target)
        if target in machine.derived and not system:
            raise InvalidStateError(
                current, target, f"Status '{target}' is set automatically and cannot be chosen"
            )

        now = utcnow()
        entity.status = target
        stamp(entity, target, now)
        entity.updated_at = now

        actor_id = getattr(actor, "id", None)
        record_activity(
            db,
            entity_type=entity_type,
            entity_id=entity.id,
            action=f"Status changed to {target}",
            details=details or f"Previous status: {current}",
            metadata={"previous_status": current, "new_status": target, "source": source},
            actor_id=actor_id,
            org_id=entity.org_id,
        )
        logger.info(
            "status_transition",
            entity_type=entity_type,
            entity_id=str(entity.id),
            previous_status=current,
            new_status=target,
            source=source,
        )
        return entity


validator = TransitionValidator({
    "quote": QUOTE_MACHINE,
    "job": JOB_MACHINE,
    "invoice": INVOICE_MACHINE,
})


def local_today(tz_name: Optional[str] = None) -> date:
    tz = pytz.timezone(tz_name or settings.tz_default)
    return datetime.now(tz).date()


def expire_stale_quotes(db: Session, org_id=None, today: Optional[date] = None) -> List[Quote]:
    """Move sent/viewed quotes past their validity date to ``expired``."""
    today = today or local_today()
    query = db.query(Quote).filter(
        Quote.status.in_(("sent", "viewed")),
        Quote.valid_until.isnot(None),
        Quote.valid_until < today,
    )
    if org_id is not None:
        query = query.filter(Quote.org_id == org_id)
    expired = []
    for quote in query.all():
        validator.apply_transition(
            db, quote, "expired", source="system", system=True,
            details=f"Valid until {quote.valid_until.isoformat()}",
        )
        expired.append(quote)
    return expired


def refresh_quote_expiry(db: Session, quote: Quote, today: Optional[date] = None) -> bool:
    """Derive the expired state for one quote. Returns True when it changed."""
    today = today or local_today()
    if quote.status not in ("sent", "viewed") or quote.valid_until is None or quote.valid_until >= today:
        return False
    validator.apply_transition(
        db, quote, "expired", source="system", system=True,
        details=f"Valid until {quote.valid_until.isoformat()}",
    )
    return True


def is_overdue(invoice: Invoice, today: Optional[date] = None) -> bool:
    today = today or local_today()
    return (
        invoice.status in ("sent", "viewed")
        and invoice.due_date is not None
        and invoice.due_date < today
    )


def refresh_overdue(db: Session, invoice: Invoice, today: Optional[date] = None) -> bool:
    """Derive the overdue state for one invoice. Returns True when it changed."""
    if not is_overdue(invoice, today):
        return False
    validator.apply_transition(
        db, invoice, "overdue", source="system", system=True,
        details=f"Due date {invoice.due_date.isoformat()} passed",
    )
    return True


def refresh_overdue_invoices(db: Session, org_id=None, today: Optional[date] = None) -> List[Invoice]:
    today = today or local_today()
    query = db.query(Invoice).filter(
        Invoice.status.in_(("sent", "viewed")),
        Invoice.due_date.isnot(None),
        Invoice.due_date < today,
    )
    if org_id is not None:
        query = query.filter(Invoice.org_id == org_id)
    return [invoice for invoice in query.all() if refresh_overdue(db, invoice, today)]
