import json
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from flowtrade.config import settings
from flowtrade.db import SessionLocal
from flowtrade.models.models import ActivityLog, Payment, WebhookEvent, utcnow
from flowtrade.services.payments import STRIPE_HANDLERS
from flowtrade.services.webhooks import WebhookProcessor


def checkout_completed(event_id, invoice_id, amount_cents=110000, intent="pi_1"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": f"cs_{event_id}",
            "payment_intent": intent,
            "amount_total": amount_cents,
            "metadata": {"invoice_id": invoice_id},
        }},
    }


@pytest.fixture
def sent_invoice(client, auth_headers, make_invoice):
    invoice = make_invoice()
    r = client.post(f"/invoices/{invoice['id']}/send", headers=auth_headers)
    assert r.json()["status"] == "sent"
    return invoice


def _events(client, admin_headers, status=None):
    params = {"status": status} if status else {}
    r = client.get("/webhooks/events", params=params, headers=admin_headers)
    assert r.status_code == 200
    return r.json()


def test_payment_event_settles_invoice_once(client, auth_headers, admin_headers, sent_invoice):
    payload = checkout_completed("evt_paid", sent_invoice["id"])
    r = client.post("/webhooks/stripe", json=payload)
    assert r.status_code == 200
    assert r.json() == {"received": True, "event_id": "evt_paid", "status": "processed"}

    r = client.post("/webhooks/stripe", json=payload)
    assert r.status_code == 200
    assert r.json()["status"] == "processed"

    invoice = client.get(f"/invoices/{sent_invoice['id']}", headers=auth_headers).json()
    assert invoice["status"] == "paid"
    assert Decimal(invoice["amount_paid"]) == Decimal("1100")
    assert Decimal(invoice["amount_outstanding"]) == Decimal("0")
    assert len(invoice["payments"]) == 1
    assert invoice["payments"][0]["provider_payment_id"] == "pi_1"

    events = _events(client, admin_headers)
    assert len(events) == 1
    assert events[0]["attempts"] == 1


def test_partial_payment_leaves_invoice_open(client, auth_headers, sent_invoice):
    client.post("/webhooks/stripe", json=checkout_completed("evt_part", sent_invoice["id"], amount_cents=50000))
    invoice = client.get(f"/invoices/{sent_invoice['id']}", headers=auth_headers).json()
    assert invoice["status"] == "sent"
    assert Decimal(invoice["amount_outstanding"]) == Decimal("600")


def test_same_intent_from_two_events_is_recorded_once(client, auth_headers, sent_invoice):
    client.post("/webhooks/stripe", json=checkout_completed("evt_a", sent_invoice["id"], intent="pi_dup"))
    succeeded = {
        "id": "evt_b",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_dup", "amount_received": 110000, "metadata": {"invoice_id": sent_invoice["id"]}}},
    }
    r = client.post("/webhooks/stripe", json=succeeded)
    assert r.json()["status"] == "processed"
    invoice = client.get(f"/invoices/{sent_invoice['id']}", headers=auth_headers).json()
    assert len(invoice["payments"]) == 1
    assert Decimal(invoice["amount_paid"]) == Decimal("1100")


def test_failed_event_is_retried_from_stored_payload(client, auth_headers, admin_headers, make_invoice, db):
    # Draft invoices cannot be paid yet, so the handler fails
    invoice = make_invoice()
    r = client.post("/webhooks/stripe", json=checkout_completed("evt_123", invoice["id"]))
    assert r.status_code == 200
    assert r.json()["status"] == "failed"

    failed = _events(client, admin_headers, status="failed")
    assert [e["event_id"] for e in failed] == ["evt_123"]
    assert failed[0]["attempts"] == 1
    assert "draft" in failed[0]["error_message"]
    assert db.query(Payment).count() == 0

    client.post(f"/invoices/{invoice['id']}/send", headers=auth_headers)
    r = client.post(f"/webhooks/events/{failed[0]['id']}/retry", headers=admin_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "processed"
    assert body["attempts"] == 2
    assert body["error_message"] is None
    assert body["payload"]["id"] == "evt_123"

    invoice = client.get(f"/invoices/{invoice['id']}", headers=auth_headers).json()
    assert invoice["status"] == "paid"

    # Retrying a processed event changes nothing
    r = client.post(f"/webhooks/events/{failed[0]['id']}/retry", headers=admin_headers)
    assert r.json()["status"] == "processed"
    assert r.json()["attempts"] == 2
    assert db.query(Payment).count() == 1


def test_redelivery_of_failed_event_reprocesses(client, auth_headers, make_invoice):
    invoice = make_invoice()
    payload = checkout_completed("evt_again", invoice["id"])
    assert client.post("/webhooks/stripe", json=payload).json()["status"] == "failed"
    client.post(f"/invoices/{invoice['id']}/send", headers=auth_headers)
    assert client.post("/webhooks/stripe", json=payload).json()["status"] == "processed"


def test_in_flight_event_is_not_processed_twice(client, admin_headers, db):
    db.add(WebhookEvent(
        source="stripe", event_id="evt_busy", event_type="checkout.session.completed",
        status="received", payload={"id": "evt_busy"}, received_at=utcnow(),
    ))
    db.commit()

    r = client.post("/webhooks/stripe", json={"id": "evt_busy", "type": "checkout.session.completed"})
    assert r.json()["status"] == "received"

    event = _events(client, admin_headers)[0]
    r = client.post(f"/webhooks/events/{event['id']}/retry", headers=admin_headers)
    assert r.status_code == 400


def test_stale_received_event_can_be_retried(client, admin_headers, db):
    db.add(WebhookEvent(
        source="stripe", event_id="evt_stuck", event_type="customer.created",
        status="received", payload={"id": "evt_stuck", "type": "customer.created"},
        received_at=utcnow() - timedelta(hours=1), claimed_at=utcnow() - timedelta(hours=1),
    ))
    db.commit()

    event = _events(client, admin_headers)[0]
    r = client.post(f"/webhooks/events/{event['id']}/retry", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "processed"


def test_unknown_event_type_is_acknowledged(client):
    r = client.post("/webhooks/stripe", json={"id": "evt_other", "type": "customer.created", "data": {}})
    assert r.status_code == 200
    assert r.json()["status"] == "processed"


@pytest.mark.parametrize("payload", [{"type": "checkout.session.completed"}, {"id": "evt_x"}, ["not", "an", "object"]])
def test_malformed_payload_is_rejected(client, payload):
    r = client.post("/webhooks/stripe", json=payload)
    assert r.status_code == 400
    assert "error" in r.json()


def test_invalid_json_is_rejected(client):
    r = client.post("/webhooks/stripe", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400


def test_unknown_source_is_not_found(client):
    r = client.post("/webhooks/paypal", json={"id": "evt_1", "type": "x"})
    assert r.status_code == 404


def test_signed_deliveries(client, monkeypatch, sign_stripe):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    body = json.dumps({"id": "evt_signed", "type": "customer.created"}).encode()

    r = client.post("/webhooks/stripe", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 400

    bad = sign_stripe(body, "whsec_other")
    r = client.post("/webhooks/stripe", content=body, headers={"content-type": "application/json", "stripe-signature": bad})
    assert r.status_code == 400

    good = sign_stripe(body, "whsec_test")
    r = client.post("/webhooks/stripe", content=body, headers={"content-type": "application/json", "stripe-signature": good})
    assert r.status_code == 200
    assert r.json()["status"] == "processed"


def test_payment_failure_is_logged_on_invoice(client, auth_headers, sent_invoice, db):
    payload = {
        "id": "evt_declined",
        "type": "payment_intent.payment_failed",
        "data": {"object": {
            "id": "pi_declined",
            "metadata": {"invoice_id": sent_invoice["id"]},
            "last_payment_error": {"message": "Your card was declined."},
        }},
    }
    assert client.post("/webhooks/stripe", json=payload).json()["status"] == "processed"
    entry = db.query(ActivityLog).filter(ActivityLog.action == "payment_failed").one()
    assert entry.details == "Your card was declined."
    invoice = client.get(f"/invoices/{sent_invoice['id']}", headers=auth_headers).json()
    assert invoice["status"] == "sent"


def test_expired_checkout_marks_pending_payment(db, sent_invoice):
    db.add(Payment(
        invoice_id=uuid.UUID(sent_invoice["id"]), amount=Decimal("1100"),
        status="pending", provider_session_id="cs_late",
    ))
    db.commit()
    processor = WebhookProcessor({"stripe": STRIPE_HANDLERS})
    event = processor.ingest(db, {"id": "evt_exp", "type": "checkout.session.expired", "data": {"object": {"id": "cs_late"}}}, "stripe")
    assert event.status == "processed"
    assert db.query(Payment).filter(Payment.provider_session_id == "cs_late").one().status == "expired"


def test_handler_errors_never_escape_the_processor(db):
    def explode(session, payload):
        raise RuntimeError("provider lookup timed out")

    processor = WebhookProcessor({"acme": {"thing.happened": explode}})
    event = processor.ingest(db, {"id": "evt_boom", "type": "thing.happened"}, "acme")
    assert event.status == "failed"
    assert event.error_message == "provider lookup timed out"
    assert event.attempts == 1

    event = processor.retry(db, event.id)
    assert event.status == "failed"
    assert event.attempts == 2


def test_zero_amount_payment_is_recorded_as_failed(client, auth_headers, admin_headers, sent_invoice):
    r = client.post("/webhooks/stripe", json=checkout_completed("evt_zero", sent_invoice["id"], amount_cents=0))
    assert r.json()["status"] == "failed"
    event = _events(client, admin_headers, status="failed")[0]
    assert "non-positive" in event["error_message"]
    invoice = client.get(f"/invoices/{sent_invoice['id']}", headers=auth_headers).json()
    assert Decimal(invoice["amount_paid"]) == Decimal("0")
    assert invoice["payments"] == []


def test_losing_the_insert_race_returns_the_stored_event(db, monkeypatch):
    calls = []
    processor = WebhookProcessor({"acme": {"thing.happened": lambda session, payload: calls.append(payload["id"])}})
    winner = processor.ingest(db, {"id": "evt_race", "type": "thing.happened"}, "acme")

    # The second delivery looked before the first one was stored
    real_find = processor._find
    lookups = []

    def stale_find(session, source, event_id):
        lookups.append(event_id)
        return None if len(lookups) == 1 else real_find(session, source, event_id)

    monkeypatch.setattr(processor, "_find", stale_find)
    event = processor.ingest(db, {"id": "evt_race", "type": "thing.happened"}, "acme")

    assert event.id == winner.id
    assert event.status == "processed"
    assert calls == ["evt_race"]
    assert db.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_race").count() == 1


def test_retry_that_loses_the_claim_does_not_dispatch(db):
    calls = []

    def flaky(session, payload):
        calls.append(payload["id"])
        if len(calls) == 1:
            raise RuntimeError("provider lookup timed out")

    processor = WebhookProcessor({"acme": {"thing.happened": flaky}})
    event_pk = processor.ingest(db, {"id": "evt_claim", "type": "thing.happened"}, "acme").id

    # This worker read the row as failed just before another run finished it
    worker = SessionLocal()
    try:
        assert worker.get(WebhookEvent, event_pk).status == "failed"
        db.execute(update(WebhookEvent).where(WebhookEvent.id == event_pk).values(status="processed"))
        db.commit()
        event = processor.retry(worker, event_pk)
        assert event.status == "processed"
    finally:
        worker.close()

    assert calls == ["evt_claim"]


def test_failure_never_overwrites_a_processed_event(db):
    def finished_elsewhere(session, payload):
        other = SessionLocal()
        try:
            other.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == payload["id"])
                .values(status="processed", attempts=1)
            )
            other.commit()
        finally:
            other.close()
        raise RuntimeError("duplicate key value violates unique constraint")

    processor = WebhookProcessor({"acme": {"thing.happened": finished_elsewhere}})
    event = processor.ingest(db, {"id": "evt_won", "type": "thing.happened"}, "acme")

    assert event.status == "processed"
    assert event.error_message is None
    assert event.attempts == 1
