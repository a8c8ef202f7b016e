import uuid
from decimal import Decimal

import pytest


def _items(quote):
    return {li["description"]: li for li in quote["line_items"]}


def test_edit_applies_removals_updates_and_additions(client, auth_headers, make_quote):
    quote = make_quote(line_items=[
        {"description": "Labour", "quantity": "2", "unit_price": "100"},
        {"description": "Old fittings", "quantity": "1", "unit_price": "50"},
    ])
    items = _items(quote)
    changes = [
        {"op": "remove", "id": items["Old fittings"]["id"]},
        {"op": "update", "id": items["Labour"]["id"], "quantity": "3"},
        {"op": "add", "description": "Call-out fee", "unit_price": "80"},
    ]
    r = client.patch(f"/quotes/{quote['id']}/line-items", json={"changes": changes}, headers=auth_headers)
    assert r.status_code == 200, r.text
    body = r.json()

    assert [li["description"] for li in body["line_items"]] == ["Labour", "Call-out fee"]
    assert [li["position"] for li in body["line_items"]] == [0, 1]
    assert Decimal(body["line_items"][0]["line_total"]) == Decimal("300")
    assert Decimal(body["subtotal"]) == Decimal("380")
    assert Decimal(body["tax_amount"]) == Decimal("38")
    assert Decimal(body["total"]) == Decimal("418")

    r = client.get(f"/quotes/{quote['id']}/activity", headers=auth_headers)
    edits = [a for a in r.json() if a["action"] == "Line items updated"]
    assert len(edits) == 1
    assert edits[0]["metadata"]["removed"] == [items["Old fittings"]["id"]]
    assert edits[0]["metadata"]["updated"][items["Labour"]["id"]]["quantity"]["after"] == "3"


def test_marking_an_item_optional_drops_it_from_totals(client, auth_headers, make_quote):
    quote = make_quote(line_items=[
        {"description": "Install", "quantity": "1", "unit_price": "500"},
        {"description": "Gutter guard", "quantity": "1", "unit_price": "200"},
    ])
    gutter = _items(quote)["Gutter guard"]
    r = client.patch(
        f"/quotes/{quote['id']}/line-items",
        json={"changes": [{"op": "update", "id": gutter["id"], "is_optional": True}]},
        headers=auth_headers,
    )
    assert r.status_code == 200
    assert Decimal(r.json()["subtotal"]) == Decimal("500")


def test_unknown_item_rejects_whole_edit(client, auth_headers, make_quote):
    quote = make_quote()
    changes = [
        {"op": "add", "description": "Extra", "unit_price": "10"},
        {"op": "remove", "id": str(uuid.uuid4())},
    ]
    r = client.patch(f"/quotes/{quote['id']}/line-items", json={"changes": changes}, headers=auth_headers)
    assert r.status_code == 400

    r = client.get(f"/quotes/{quote['id']}", headers=auth_headers)
    assert len(r.json()["line_items"]) == 1
    assert Decimal(r.json()["total"]) == Decimal("1100")


def test_update_and_remove_same_item_is_rejected(client, auth_headers, make_quote):
    quote = make_quote()
    item_id = quote["line_items"][0]["id"]
    changes = [{"op": "remove", "id": item_id}, {"op": "update", "id": item_id, "unit_price": "5"}]
    r = client.patch(f"/quotes/{quote['id']}/line-items", json={"changes": changes}, headers=auth_headers)
    assert r.status_code == 400


@pytest.mark.parametrize("op, extra", [("remove", {}), ("update", {"unit_price": "5"})])
def test_repeated_item_in_one_edit_is_rejected(client, auth_headers, make_quote, op, extra):
    quote = make_quote()
    item_id = quote["line_items"][0]["id"]
    changes = [{"op": op, "id": item_id, **extra}, {"op": op, "id": item_id, **extra}]
    r = client.patch(f"/quotes/{quote['id']}/line-items", json={"changes": changes}, headers=auth_headers)
    assert r.status_code == 400
    assert "once per edit" in r.json()["error"]

    r = client.get(f"/quotes/{quote['id']}", headers=auth_headers)
    assert len(r.json()["line_items"]) == 1
    assert Decimal(r.json()["subtotal"]) == Decimal("1000")


def test_sent_quote_is_not_editable(client, auth_headers, make_quote):
    quote = make_quote()
    r = client.patch(f"/quotes/{quote['id']}/status", json={"status": "sent"}, headers=auth_headers)
    assert r.status_code == 200
    r = client.patch(
        f"/quotes/{quote['id']}/line-items",
        json={"changes": [{"op": "add", "description": "Late extra", "unit_price": "10"}]},
        headers=auth_headers,
    )
    assert r.status_code == 400
    assert r.json()["current_status"] == "sent"


def test_failed_invoice_edit_rolls_back(client, auth_headers, make_invoice):
    invoice = make_invoice()
    item_id = invoice["line_items"][0]["id"]
    changes = [
        {"op": "update", "id": item_id, "unit_price": "2000"},
        {"op": "add", "description": "Optional extra", "unit_price": "10", "is_optional": True},
    ]
    r = client.patch(f"/invoices/{invoice['id']}/line-items", json={"changes": changes}, headers=auth_headers)
    assert r.status_code == 400

    r = client.get(f"/invoices/{invoice['id']}", headers=auth_headers)
    body = r.json()
    assert Decimal(body["line_items"][0]["unit_price"]) == Decimal("1000")
    assert Decimal(body["total"]) == Decimal("1100")


def test_unknown_op_is_a_validation_error(client, auth_headers, make_quote):
    quote = make_quote()
    r = client.patch(
        f"/quotes/{quote['id']}/line-items",
        json={"changes": [{"op": "replace", "id": quote["line_items"][0]["id"]}]},
        headers=auth_headers,
    )
    assert r.status_code == 422
