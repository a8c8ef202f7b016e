import re
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models.models import Invoice, Job, Quote

NUMBER_COLUMNS = {
    "QTE": (Quote, Quote.quote_number),
    "JOB": (Job, Job.job_number),
    "INV": (Invoice, Invoice.invoice_number),
}


def next_number(db: Session, prefix: str, org_id, now: Optional[datetime] = None) -> str:
    """Next sequential document number for the org, e.g. ``INV-202610-0007``."""
    model, column = NUMBER_COLUMNS[prefix]
    now = now or datetime.now()
    period_prefix = f"{prefix}-{now.year}{now.month:02d}-"
    latest = (
        db.query(column)
        .filter(model.org_id == org_id, column.like(f"{period_prefix}%"))
        .order_by(column.desc())
        .first()
    )
    next_seq = 1
    if latest:
        match = re.match(rf"{prefix}-\d{{6}}-(\d+)$", latest[0])
        if match:
            next_seq = int(match.group(1)) + 1
    return f"{period_prefix}{next_seq:04d}"
