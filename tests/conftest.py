"""Shared test fixtures."""

import os
import time

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["ENABLE_EMAIL"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PORTAL_RATE_LIMIT"] = "10000/minute"
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)
os.environ.pop("STRIPE_SECRET_KEY", None)

import pytest
import stripe
from fastapi.testclient import TestClient

from flowtrade.auth.security import create_access_token
from flowtrade.db import Base, SessionLocal, engine
from flowtrade.main import app
from flowtrade.models.models import Customer, Organization, Role, User


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Provide a session on the in-memory database."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def org(db):
    org = Organization(name="Harbour Plumbing")
    db.add(org)
    db.commit()
    return org


def _make_user(db, org, username, role_name):
    role = db.query(Role).filter(Role.name == role_name).first() or Role(name=role_name)
    user = User(org_id=org.id, username=username, email=f"{username}@example.com", roles=[role])
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def user(db, org):
    return _make_user(db, org, "office", "office")


@pytest.fixture
def admin(db, org):
    return _make_user(db, org, "admin", "admin")


@pytest.fixture
def customer(db, org):
    customer = Customer(org_id=org.id, name="Jane Citizen", email="jane@example.com", address="1 George St, Sydney")
    db.add(customer)
    db.commit()
    return customer


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(str(user.id), roles=['office'])}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_access_token(str(admin.id), roles=['admin'])}"}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_quote(client, auth_headers, customer):
    """Create a quote through the API and return its JSON body."""
    def _make(line_items=None, **overrides):
        payload = {
            "customer_id": str(customer.id),
            "tax_rate": "10",
            "job_site_address": "1 George St, Sydney",
            "line_items": line_items if line_items is not None else [
                {"description": "Replace hot water unit", "quantity": "1", "unit_price": "1000"},
            ],
        }
        payload.update(overrides)
        r = client.post("/quotes", json=payload, headers=auth_headers)
        assert r.status_code == 201, r.text
        return r.json()

    return _make


@pytest.fixture
def make_invoice(client, auth_headers, customer):
    def _make(line_items=None, **overrides):
        payload = {
            "customer_id": str(customer.id),
            "tax_rate": "10",
            "line_items": line_items if line_items is not None else [
                {"description": "Blocked drain clearance", "quantity": "1", "unit_price": "1000"},
            ],
        }
        payload.update(overrides)
        r = client.post("/invoices", json=payload, headers=auth_headers)
        assert r.status_code == 201, r.text
        return r.json()

    return _make


@pytest.fixture
def sign_stripe():
    """Build a stripe-signature header for a raw body."""
    def _sign(body: bytes, secret: str, timestamp=None):
        timestamp = int(time.time()) if timestamp is None else timestamp
        signature = stripe.WebhookSignature._compute_signature(f"{timestamp}.{body.decode()}", secret)
        return f"t={timestamp},v1={signature}"

    return _sign
