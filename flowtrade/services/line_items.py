"""
Line-item building and editing for quotes and invoices.

Edits arrive as an explicit command list (add/update/remove) and are applied
as one transaction together with the recomputed document totals.
"""
from typing import Dict, Iterable, List, Sequence

import structlog
from sqlalchemy.orm import Session

from ..models.models import Invoice, InvoiceLineItem, Quote, QuoteLineItem, utcnow
from .activity import compute_diff, record_activity
from .errors import InvalidStateError, ValidationError
from .totals import apply_totals, compute_totals, deposit_terms_for, line_total

logger = structlog.get_logger(__name__)

EDITABLE_STATUSES = {
    "quote": frozenset({"draft"}),
    "invoice": frozenset({"draft"}),
}

ITEM_FIELDS = ("item_type", "description", "quantity", "unit", "unit_price")
REQUIRED_FIELDS = ("description", "quantity", "unit_price")


def _document_kind(document):
    if isinstance(document, Quote):
        return "quote", QuoteLineItem, True
    if isinstance(document, Invoice):
        return "invoice", InvoiceLineItem, False
    raise TypeError(f"Line items are not supported on {type(document).__name__}")


def _snapshot(item) -> Dict:
    data = {key: getattr(item, key) for key in ITEM_FIELDS}
    data["quantity"] = str(data["quantity"])
    data["unit_price"] = str(data["unit_price"])
    if hasattr(item, "is_optional"):
        data["is_optional"] = bool(item.is_optional)
    return data


def new_line_item(item_cls, data: Dict, position: int, allow_optional: bool):
    if data.get("is_optional") and not allow_optional:
        raise ValidationError("Optional line items are only supported on quotes")
    fields = {key: data.get(key) for key in ITEM_FIELDS if data.get(key) is not None}
    if allow_optional:
        fields["is_optional"] = bool(data.get("is_optional"))
    item = item_cls(position=position, **fields)
    item.line_total = line_total(item)
    return item


def build_line_items(item_cls, items: Iterable, allow_optional: bool) -> List:
    """Rows for a new document from LineItemBase payloads, in order."""
    return [
        new_line_item(item_cls, item.model_dump(), position, allow_optional)
        for position, item in enumerate(items)
    ]


def recompute_totals(document) -> None:
    deposit = deposit_terms_for(document) if isinstance(document, Quote) else None
    totals = compute_totals(document.line_items, document.tax_rate, deposit)
    apply_totals(document, totals)


def apply_line_item_changes(db: Session, document, changes: Sequence, actor=None):
    """
    Apply add/update/remove commands to a draft quote or invoice.

    Order is removals, then updates, then additions. Totals are recomputed
    from the flushed rows and written in the same transaction; any error rolls
    back the whole edit.
    """
    kind, item_cls, allow_optional = _document_kind(document)
    document_id = document.id
    if document.status not in EDITABLE_STATUSES[kind]:
        raise InvalidStateError(
            document.status, "edit",
            f"Line items cannot be edited while the {kind} is {document.status}",
        )

    existing = {item.id: item for item in document.line_items}
    removes = [c for c in changes if c.op == "remove"]
    updates = [c for c in changes if c.op == "update"]
    adds = [c for c in changes if c.op == "add"]

    for change in removes + updates:
        if change.id not in existing:
            raise ValidationError(f"Line item {change.id} does not belong to this {kind}")
    removed_ids = {c.id for c in removes}
    if len(removed_ids) != len(removes):
        raise ValidationError("A line item can only be removed once per edit")
    if len({c.id for c in updates}) != len(updates):
        raise ValidationError("A line item can only be updated once per edit")
    if any(c.id in removed_ids for c in updates):
        raise ValidationError("A line item cannot be updated and removed in the same edit")

    try:
        for change in removes:
            document.line_items.remove(existing[change.id])

        diffs = {}
        for change in updates:
            item = existing[change.id]
            before = _snapshot(item)
            data = change.model_dump(exclude_unset=True, exclude={"op", "id"})
            if data.get("is_optional") and not allow_optional:
                raise ValidationError("Optional line items are only supported on quotes")
            if not allow_optional:
                data.pop("is_optional", None)
            for key, value in data.items():
                if value is None and key in REQUIRED_FIELDS:
                    continue
                setattr(item, key, value)
            item.line_total = line_total(item)
            diff = compute_diff(before, _snapshot(item))
            if diff:
                diffs[str(item.id)] = diff

        for change in adds:
            document.line_items.append(
                new_line_item(item_cls, change.model_dump(), len(document.line_items), allow_optional)
            )

        for position, item in enumerate(document.line_items):
            item.position = position
        db.flush()

        # Totals come from what was actually persisted
        db.expire(document, ["line_items"])
        recompute_totals(document)
        document.updated_at = utcnow()

        record_activity(
            db,
            entity_type=kind,
            entity_id=document.id,
            action="Line items updated",
            details=f"{len(removes)} removed, {len(updates)} updated, {len(adds)} added",
            metadata={
                "removed": [str(c.id) for c in removes],
                "updated": diffs,
                "added": len(adds),
                "subtotal": str(document.subtotal),
                "total": str(document.total),
            },
            actor_id=getattr(actor, "id", None),
            org_id=document.org_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("line_item_edit_failed", document_type=kind, document_id=str(document_id))
        raise

    db.refresh(document)
    return document
