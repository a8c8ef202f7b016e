"""
Document totals shared by quote/invoice creation, line-item edits and
conversions. Money is Decimal throughout and rounded half-up to cents.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from .errors import ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
DEPOSIT_TYPES = ("none", "amount", "percentage")


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise into Decimal
    return Decimal(str(value))


def to_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DepositTerms:
    type: str = "none"
    value: Decimal = Decimal("0")

    def __post_init__(self):
        if self.type not in DEPOSIT_TYPES:
            raise ValidationError(f"Unknown deposit type '{self.type}'")
        value = to_decimal(self.value)
        if value < 0:
            raise ValidationError("Deposit value cannot be negative")
        if self.type == "percentage" and value > HUNDRED:
            raise ValidationError("Deposit percentage cannot exceed 100")
        object.__setattr__(self, "value", value)

    @property
    def required(self) -> bool:
        return self.type != "none"


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    deposit_amount: Decimal


def line_total(item) -> Decimal:
    return to_money(to_decimal(item.quantity) * to_decimal(item.unit_price))


def compute_totals(items: Iterable, tax_rate, deposit: Optional[DepositTerms] = None) -> Totals:
    """
    Sum quantity x unit price over the chargeable items.

    Items flagged ``is_optional`` are excluded. Removed items are expected to
    be absent from ``items`` already.
    """
    subtotal = sum(
        (line_total(item) for item in items if not getattr(item, "is_optional", False)),
        Decimal("0"),
    )
    subtotal = to_money(subtotal)
    tax = to_money(subtotal * to_decimal(tax_rate) / HUNDRED)
    total = subtotal + tax

    deposit_amount = Decimal("0.00")
    if deposit is not None and deposit.required:
        if deposit.type == "percentage":
            deposit_amount = to_money(total * deposit.value / HUNDRED)
        else:
            deposit_amount = to_money(deposit.value)

    return Totals(subtotal=subtotal, tax=tax, total=total, deposit_amount=deposit_amount)


def apply_totals(document, totals: Totals) -> None:
    """Write aggregate fields onto a Quote or Invoice row."""
    document.subtotal = totals.subtotal
    document.tax_amount = totals.tax
    document.total = totals.total
    if hasattr(document, "deposit_amount"):
        document.deposit_amount = totals.deposit_amount


def deposit_terms_for(quote) -> DepositTerms:
    return DepositTerms(type=quote.deposit_type or "none", value=to_decimal(quote.deposit_value))
