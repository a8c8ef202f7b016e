from decimal import Decimal
from types import SimpleNamespace

import pytest

from flowtrade.services.errors import ValidationError
from flowtrade.services.totals import DepositTerms, compute_totals, line_total, to_money


def item(quantity, unit_price, is_optional=False):
    return SimpleNamespace(quantity=Decimal(str(quantity)), unit_price=Decimal(str(unit_price)), is_optional=is_optional)


def test_single_line_with_gst_and_half_deposit():
    totals = compute_totals([item(1, 1000)], Decimal("10"), DepositTerms("percentage", Decimal("50")))
    assert totals.subtotal == Decimal("1000.00")
    assert totals.tax == Decimal("100.00")
    assert totals.total == Decimal("1100.00")
    assert totals.deposit_amount == Decimal("550.00")


def test_optional_items_are_not_charged():
    totals = compute_totals([item(2, 150), item(1, 400, is_optional=True)], 10)
    assert totals.subtotal == Decimal("300.00")
    assert totals.total == Decimal("330.00")


def test_total_is_subtotal_plus_tax():
    items = [item("3.5", "89.99"), item("0.333", "12.10"), item(7, "0.07")]
    totals = compute_totals(items, Decimal("12.5"))
    assert totals.total == totals.subtotal + totals.tax


def test_tax_rounds_half_up_to_cents():
    # 0.05 * 10% = 0.005 -> 0.01
    totals = compute_totals([item(1, "0.05")], 10)
    assert totals.tax == Decimal("0.01")
    assert to_money("2.675") == Decimal("2.68")


def test_fixed_deposit_is_taken_as_is():
    totals = compute_totals([item(1, 1000)], 10, DepositTerms("amount", Decimal("250")))
    assert totals.deposit_amount == Decimal("250.00")


def test_no_deposit_means_zero():
    totals = compute_totals([item(1, 1000)], 10, DepositTerms())
    assert totals.deposit_amount == Decimal("0.00")


def test_empty_document_totals_zero():
    totals = compute_totals([], 10)
    assert (totals.subtotal, totals.tax, totals.total) == (Decimal("0.00"), Decimal("0.00"), Decimal("0.00"))


@pytest.mark.parametrize("kind,value", [("percentage", "120"), ("amount", "-1"), ("bogus", "10")])
def test_invalid_deposit_terms(kind, value):
    with pytest.raises(ValidationError):
        DepositTerms(kind, Decimal(value))


def test_line_total_rounds_to_cents():
    assert line_total(item("0.333", "12.10")) == Decimal("4.03")


def test_created_quote_carries_computed_totals(make_quote):
    quote = make_quote(
        line_items=[
            {"description": "Rough-in plumbing", "quantity": "1", "unit_price": "1000"},
            {"description": "Premium tapware upgrade", "quantity": "1", "unit_price": "300", "is_optional": True},
        ],
        deposit_type="percentage",
        deposit_value="50",
    )
    assert Decimal(quote["subtotal"]) == Decimal("1000")
    assert Decimal(quote["tax_amount"]) == Decimal("100")
    assert Decimal(quote["total"]) == Decimal("1100")
    assert Decimal(quote["deposit_amount"]) == Decimal("550")
    assert quote["quote_number"].startswith("QTE-")
    assert [li["position"] for li in quote["line_items"]] == [0, 1]
