import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from subsync import create_app
from subsync.extensions import db
from subsync.models import Membership
from subsync.utils.helpers import utcnow

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="session")
def app():
    app = create_app(config_overrides={
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "RATELIMIT_ENABLED": False,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def engine(app):
    return app.extensions["reconciler"]


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, kind, user_id, payload):
        self.sent.append((kind, user_id, payload))


@pytest.fixture()
def notifier(engine, monkeypatch):
    rec = RecordingNotifier()
    monkeypatch.setattr(engine.settings, "notifier", rec)
    return rec


def sign(body: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Provider signature header: t=<unix>,v1=<hex hmac-sha256 of "t.body">."""
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def make_event(ev_id, ev_type, obj, created=None):
    return {
        "id": ev_id,
        "object": "event",
        "type": ev_type,
        "created": created or int(time.time()),
        "data": {"object": obj},
    }


def checkout_event(ev_id="evt_checkout_1", user_id="U1", plan_id="pro", duration="yearly",
                   amount_total=9900, customer="cus_U1", subscription="sub_U1"):
    metadata = {}
    if plan_id is not None:
        metadata["planId"] = plan_id
    if duration is not None:
        metadata["durationType"] = duration
    return make_event(ev_id, "checkout.session.completed", {
        "id": f"cs_{ev_id}",
        "object": "checkout.session",
        "client_reference_id": user_id,
        "metadata": metadata,
        "amount_total": amount_total,
        "currency": "usd",
        "customer": customer,
        "subscription": subscription,
        "payment_intent": f"pi_{ev_id}",
        "payment_method_types": ["card"],
    })


def subscription_event(ev_id, ev_type="customer.subscription.updated", status="active",
                       customer="cus_U1", sub_id="sub_U1", period_end=None, cancel_at_period_end=False):
    return make_event(ev_id, ev_type, {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end or int(time.time()) + 30 * 86400,
        "cancel_at_period_end": cancel_at_period_end,
        "trial_end": int(time.time()) + 3 * 86400,
    })


def invoice_event(ev_id, ev_type="invoice.payment_failed", attempt_count=1, customer="cus_U1",
                  amount_due=1900, amount_paid=0, payment_intent=None):
    return make_event(ev_id, ev_type, {
        "id": f"in_{ev_id}",
        "object": "invoice",
        "customer": customer,
        "subscription": "sub_U1",
        "payment_intent": payment_intent,
        "amount_due": amount_due,
        "amount_paid": amount_paid,
        "currency": "usd",
        "attempt_count": attempt_count,
        "lines": {"data": [{"description": "1 x Pro (at $19.00 / month)"}]},
        "next_payment_attempt": int(time.time()) + 86400,
    })


@pytest.fixture()
def seed_membership(app):
    """Insert an existing membership row directly (bypasses the engine)."""
    def _seed(user_id="U1", status="active", customer="cus_U1", sub_id="sub_U1", **overrides):
        now = utcnow()
        values = dict(
            user_id=user_id,
            plan_id="pro",
            status=status,
            duration_type="monthly",
            start_date=now,
            end_date=now + timedelta(days=30),
            next_renewal_date=now + timedelta(days=30),
            auto_renew=True,
            purchase_amount=19,
            currency="USD",
            provider_customer_id=customer,
            provider_subscription_id=sub_id,
        )
        values.update(overrides)
        with app.app_context():
            db.session.add(Membership(**values))
            db.session.commit()
    return _seed


def post_signed(client, event, secret=WEBHOOK_SECRET, timestamp=None):
    body = json.dumps(event)
    return client.post(
        "/webhooks/stripe",
        data=body,
        headers={"Stripe-Signature": sign(body, secret, timestamp), "Content-Type": "application/json"},
    )
