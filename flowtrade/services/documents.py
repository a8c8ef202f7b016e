"""
Creation and org-scoped loading of quotes, jobs and invoices.
"""
from datetime import timedelta

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import (
    Customer,
    Invoice,
    InvoiceLineItem,
    Job,
    Quote,
    QuoteLineItem,
)
from .activity import delete_activity_for, record_activity
from .errors import NotFoundError, ValidationError
from .line_items import build_line_items, recompute_totals
from .numbering import next_number
from .totals import DepositTerms, to_decimal
from .transitions import local_today, refresh_overdue, refresh_quote_expiry


def _get_scoped(db: Session, model, entity_id, org_id, label: str):
    entity = db.query(model).filter(model.id == entity_id, model.org_id == org_id).first()
    if entity is None:
        raise NotFoundError(f"{label} not found")
    return entity


def get_quote(db: Session, quote_id, org_id, refresh: bool = True) -> Quote:
    quote = _get_scoped(db, Quote, quote_id, org_id, "Quote")
    if refresh and refresh_quote_expiry(db, quote):
        db.commit()
        db.refresh(quote)
    return quote


def get_job(db: Session, job_id, org_id) -> Job:
    return _get_scoped(db, Job, job_id, org_id, "Job")


def get_invoice(db: Session, invoice_id, org_id, refresh: bool = True) -> Invoice:
    invoice = _get_scoped(db, Invoice, invoice_id, org_id, "Invoice")
    if refresh and refresh_overdue(db, invoice):
        db.commit()
        db.refresh(invoice)
    return invoice


def get_customer(db: Session, customer_id, org_id) -> Customer:
    customer = db.query(Customer).filter(Customer.id == customer_id, Customer.org_id == org_id).first()
    if customer is None:
        raise ValidationError("Customer not found for this organization")
    return customer


def create_quote(db: Session, data, actor) -> Quote:
    """Create a draft quote with totals from the shared engine."""
    get_customer(db, data.customer_id, actor.org_id)
    deposit = DepositTerms(type=data.deposit_type.value, value=data.deposit_value)
    tax_rate = data.tax_rate if data.tax_rate is not None else to_decimal(settings.default_tax_rate)

    quote = Quote(
        org_id=actor.org_id,
        quote_number=next_number(db, "QTE", actor.org_id),
        status="draft",
        customer_id=data.customer_id,
        job_site_address=data.job_site_address,
        job_description=data.job_description,
        tax_rate=tax_rate,
        deposit_type=deposit.type,
        deposit_value=deposit.value,
        valid_until=data.valid_until or local_today() + timedelta(days=settings.quote_validity_days),
        created_by=actor.id,
    )
    quote.line_items = build_line_items(QuoteLineItem, data.line_items, allow_optional=True)
    recompute_totals(quote)
    db.add(quote)
    db.flush()
    record_activity(
        db, "quote", quote.id, "created",
        details=f"Quote {quote.quote_number} created",
        metadata={"total": str(quote.total)},
        actor_id=actor.id, org_id=actor.org_id,
    )
    db.commit()
    db.refresh(quote)
    return quote


def create_job(db: Session, data, actor) -> Job:
    """Manually created jobs start out scheduled."""
    get_customer(db, data.customer_id, actor.org_id)
    job = Job(
        org_id=actor.org_id,
        job_number=next_number(db, "JOB", actor.org_id),
        status="scheduled",
        customer_id=data.customer_id,
        site_address=data.site_address,
        job_notes=data.job_notes,
        quoted_total=data.quoted_total,
        scheduled_date=data.scheduled_date,
        scheduled_time_start=data.scheduled_time_start,
        scheduled_time_end=data.scheduled_time_end,
        assigned_to=data.assigned_to,
        created_by=actor.id,
    )
    db.add(job)
    db.flush()
    record_activity(
        db, "job", job.id, "created",
        details=f"Job {job.job_number} created",
        metadata={"source": "manual"},
        actor_id=actor.id, org_id=actor.org_id,
    )
    db.commit()
    db.refresh(job)
    return job


def create_invoice(db: Session, data, actor) -> Invoice:
    get_customer(db, data.customer_id, actor.org_id)
    tax_rate = data.tax_rate if data.tax_rate is not None else to_decimal(settings.default_tax_rate)
    invoice_date = data.invoice_date or local_today()
    invoice = Invoice(
        org_id=actor.org_id,
        invoice_number=next_number(db, "INV", actor.org_id),
        status="draft",
        customer_id=data.customer_id,
        tax_rate=tax_rate,
        invoice_date=invoice_date,
        due_date=data.due_date or invoice_date + timedelta(days=settings.invoice_due_days),
        notes=data.notes,
        created_by=actor.id,
    )
    invoice.line_items = build_line_items(InvoiceLineItem, data.line_items, allow_optional=False)
    recompute_totals(invoice)
    db.add(invoice)
    db.flush()
    record_activity(
        db, "invoice", invoice.id, "created",
        details=f"Invoice {invoice.invoice_number} created",
        metadata={"source": "manual", "total": str(invoice.total)},
        actor_id=actor.id, org_id=actor.org_id,
    )
    db.commit()
    db.refresh(invoice)
    return invoice


def delete_job(db: Session, job: Job) -> None:
    """Delete a job and cascade its activity history."""
    if db.query(Invoice.id).filter(Invoice.job_id == job.id).first():
        raise ValidationError("Job has an invoice and cannot be deleted")
    delete_activity_for(db, "job", job.id)
    db.delete(job)
    db.commit()
