"""
Quote -> Job and Job -> Invoice conversion.

Each source document converts at most once. The existence check gives callers
a friendly conflict carrying the existing id; the unique constraints on
jobs.quote_id and invoices.job_id reject whichever concurrent insert commits
second, and that IntegrityError is reported through the same conflict path.
"""
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Invoice, InvoiceLineItem, Job
from .activity import record_activity
from .documents import get_job, get_quote
from .errors import ConflictError, FlowTradeError, InvalidStateError
from .line_items import recompute_totals
from .numbering import next_number
from .totals import line_total, to_decimal
from .transitions import local_today, validator

logger = structlog.get_logger(__name__)

CONVERTIBLE_QUOTE_STATUSES = frozenset({"accepted"})
INVOICEABLE_JOB_STATUSES = frozenset({"completed", "invoiced"})


def _existing_job_for_quote(db: Session, quote_id) -> Optional[Job]:
    return db.query(Job).filter(Job.quote_id == quote_id).first()


def _existing_invoice_for_job(db: Session, job_id) -> Optional[Invoice]:
    return db.query(Invoice).filter(Invoice.job_id == job_id).first()


def _job_conflict(job: Job) -> ConflictError:
    return ConflictError(
        f"Job already exists for this quote ({job.job_number})",
        field="existing_job_id",
        existing_id=job.id,
    )


def _invoice_conflict(invoice: Invoice) -> ConflictError:
    return ConflictError(
        f"Invoice {invoice.invoice_number} already exists for this job",
        field="existing_invoice_id",
        existing_id=invoice.id,
    )


def _job_notes(quote, override: Optional[str]) -> str:
    if override:
        return override
    if quote.job_description:
        return quote.job_description
    descriptions = [item.description for item in quote.line_items if item.description]
    if descriptions:
        return "\n".join(descriptions)
    return f"Job created from quote {quote.quote_number}"


def convert_quote_to_job(db: Session, quote_id, actor, schedule=None) -> Job:
    """
    Create the job for an accepted quote.

    Raises NotFoundError, InvalidStateError when the quote is not accepted, or
    ConflictError(existing_job_id) when the quote was already converted.
    """
    for attempt in range(1, settings.number_attempts + 1):
        quote = get_quote(db, quote_id, actor.org_id)
        if quote.status not in CONVERTIBLE_QUOTE_STATUSES:
            raise InvalidStateError(
                quote.status, "job",
                f"Cannot convert quote with status '{quote.status}'. Quote must be accepted first.",
            )
        existing = _existing_job_for_quote(db, quote.id)
        if existing:
            raise _job_conflict(existing)

        job = Job(
            org_id=quote.org_id,
            job_number=next_number(db, "JOB", quote.org_id),
            status="scheduled",
            quote_id=quote.id,
            customer_id=quote.customer_id,
            site_address=quote.job_site_address,
            job_notes=_job_notes(quote, getattr(schedule, "notes", None)),
            quoted_total=quote.total,
            scheduled_date=getattr(schedule, "scheduled_date", None),
            scheduled_time_start=getattr(schedule, "scheduled_time_start", None),
            scheduled_time_end=getattr(schedule, "scheduled_time_end", None),
            assigned_to=getattr(schedule, "assigned_to", None),
            created_by=actor.id,
        )
        db.add(job)
        try:
            db.flush()
            record_activity(
                db, "job", job.id, "created",
                details=f"Job created from quote {quote.quote_number}",
                metadata={
                    "source": "quote_conversion",
                    "quote_id": str(quote.id),
                    "quote_number": quote.quote_number,
                },
                actor_id=actor.id, org_id=quote.org_id,
            )
            record_activity(
                db, "quote", quote.id, "converted_to_job",
                details=f"Converted to job {job.job_number}",
                metadata={"job_id": str(job.id), "job_number": job.job_number},
                actor_id=actor.id, org_id=quote.org_id,
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _existing_job_for_quote(db, quote_id)
            if existing:
                logger.info("quote_conversion_race_lost", quote_id=str(quote_id), job_id=str(existing.id))
                raise _job_conflict(existing)
            logger.warning("job_number_collision", quote_id=str(quote_id), attempt=attempt)
            continue

        db.refresh(job)
        logger.info("quote_converted", quote_id=str(quote_id), job_id=str(job.id), job_number=job.job_number)
        return job

    raise FlowTradeError("Could not allocate a unique job number")


def _invoice_lines_for_job(job: Job):
    quote = job.quote
    source_items = [item for item in quote.line_items if not item.is_optional] if quote else []
    if source_items:
        lines = [
            InvoiceLineItem(
                position=position,
                item_type=item.item_type,
                description=item.description,
                quantity=item.quantity,
                unit=item.unit,
                unit_price=item.unit_price,
            )
            for position, item in enumerate(source_items)
        ]
    else:
        amount = job.actual_total if job.actual_total is not None else job.quoted_total
        lines = [
            InvoiceLineItem(
                position=0,
                item_type="labour",
                description=f"Work completed ({job.job_number})",
                quantity=to_decimal(1),
                unit_price=to_decimal(amount),
            )
        ]
    for line in lines:
        line.line_total = line_total(line)
    return lines


def convert_job_to_invoice(db: Session, job_id, actor) -> Invoice:
    """
    Create the draft invoice for a completed job and mark the job invoiced.

    Raises NotFoundError, InvalidStateError when the job is not completed, or
    ConflictError(existing_invoice_id) when the job already has an invoice.
    """
    for attempt in range(1, settings.number_attempts + 1):
        job = get_job(db, job_id, actor.org_id)
        if job.status not in INVOICEABLE_JOB_STATUSES:
            raise InvalidStateError(job.status, "invoice", "Job must be completed before creating an invoice")
        existing = _existing_invoice_for_job(db, job.id)
        if existing:
            raise _invoice_conflict(existing)

        tax_rate = job.quote.tax_rate if job.quote else to_decimal(settings.default_tax_rate)
        today = local_today()
        invoice = Invoice(
            org_id=job.org_id,
            invoice_number=next_number(db, "INV", job.org_id),
            status="draft",
            job_id=job.id,
            customer_id=job.customer_id,
            tax_rate=tax_rate,
            invoice_date=today,
            due_date=today + timedelta(days=settings.invoice_due_days),
            notes=f"Invoice generated from {job.job_number}",
            created_by=actor.id,
        )
        invoice.line_items = _invoice_lines_for_job(job)
        recompute_totals(invoice)
        db.add(invoice)
        try:
            db.flush()
            record_activity(
                db, "invoice", invoice.id, "created",
                details=f"Invoice created from job {job.job_number}",
                metadata={
                    "source": "job_conversion",
                    "job_id": str(job.id),
                    "job_number": job.job_number,
                    "total": str(invoice.total),
                },
                actor_id=actor.id, org_id=job.org_id,
            )
            if job.status == "completed":
                validator.apply_transition(
                    db, job, "invoiced", actor=actor, source="invoice_conversion",
                    details=f"Invoiced as {invoice.invoice_number}",
                )
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = _existing_invoice_for_job(db, job_id)
            if existing:
                logger.info("job_conversion_race_lost", job_id=str(job_id), invoice_id=str(existing.id))
                raise _invoice_conflict(existing)
            logger.warning("invoice_number_collision", job_id=str(job_id), attempt=attempt)
            continue

        db.refresh(invoice)
        logger.info("job_converted", job_id=str(job_id), invoice_id=str(invoice.id), invoice_number=invoice.invoice_number)
        return invoice

    raise FlowTradeError("Could not allocate a unique invoice number")
