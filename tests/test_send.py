import pytest

from flowtrade.config import settings
from flowtrade.services import mailer


class RefusingSMTP:
    def __init__(self, *args, **kwargs):
        raise OSError("Connection refused")


class RecordingSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        pass

    def send_message(self, msg):
        RecordingSMTP.sent.append(msg)


@pytest.fixture
def smtp_configured(monkeypatch):
    monkeypatch.setattr(settings, "enable_email", True)
    monkeypatch.setattr(settings, "smtp_host", "smtp.example.com")
    monkeypatch.setattr(settings, "mail_from", "office@harbourplumbing.example")


def test_email_failure_does_not_undo_send(client, auth_headers, make_quote, smtp_configured, monkeypatch):
    monkeypatch.setattr(mailer.smtplib, "SMTP", RefusingSMTP)
    quote = make_quote()

    r = client.post(f"/quotes/{quote['id']}/send", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "sent"
    assert r.json()["email_sent"] is False

    r = client.get(f"/quotes/{quote['id']}", headers=auth_headers)
    assert r.json()["status"] == "sent"
    assert r.json()["sent_at"] is not None

    actions = [a["action"] for a in client.get(f"/quotes/{quote['id']}/activity", headers=auth_headers).json()]
    assert "Status changed to sent" in actions
    assert "email_failed" in actions


def test_invoice_email_is_delivered(client, auth_headers, make_invoice, smtp_configured, monkeypatch):
    RecordingSMTP.sent = []
    monkeypatch.setattr(mailer.smtplib, "SMTP", RecordingSMTP)
    invoice = make_invoice()

    r = client.post(f"/invoices/{invoice['id']}/send", headers=auth_headers)
    body = r.json()
    assert (body["status"], body["email_sent"], body["message"]) == ("sent", True, "Invoice sent")
    assert body["portal_url"].startswith(f"{settings.public_base_url}/portal/invoice/")
    assert len(RecordingSMTP.sent) == 1
    assert body["portal_url"] in RecordingSMTP.sent[0].get_content()
    assert RecordingSMTP.sent[0]["To"] == "jane@example.com"
    assert invoice["invoice_number"] in RecordingSMTP.sent[0]["Subject"]


def test_resending_keeps_status(client, auth_headers, make_quote):
    quote = make_quote()
    first = client.post(f"/quotes/{quote['id']}/send", headers=auth_headers)
    r = client.post(f"/quotes/{quote['id']}/send", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "sent"
    assert r.json()["portal_url"] == first.json()["portal_url"]


def test_send_requires_customer_email(client, auth_headers, make_quote, customer, db):
    customer.email = None
    db.commit()
    quote = make_quote()
    r = client.post(f"/quotes/{quote['id']}/send", headers=auth_headers)
    assert r.status_code == 400
    r = client.get(f"/quotes/{quote['id']}", headers=auth_headers)
    assert r.json()["status"] == "draft"


def test_declined_quote_cannot_be_sent(client, auth_headers, make_quote):
    quote = make_quote()
    client.patch(f"/quotes/{quote['id']}/status", json={"status": "declined"}, headers=auth_headers)
    r = client.post(f"/quotes/{quote['id']}/send", headers=auth_headers)
    assert r.status_code == 400


def test_unauthenticated_requests_are_rejected(client, make_quote):
    quote = make_quote()
    r = client.get(f"/quotes/{quote['id']}")
    assert r.status_code == 401
