"""
Races between two workers, each with its own connection to a file-backed
SQLite database. The competing worker runs inside the window between the
membership read and the event claim, which is where SQLite still lets a
second connection commit.
"""
import logging
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from subsync import create_app
from subsync.billing import engine as engine_module
from subsync.billing import router
from subsync.billing.engine import APPLIED, DUPLICATE
from subsync.billing.events import parse_event
from subsync.extensions import db
from subsync.models import Membership, PaymentRecord, ProcessedEvent, UsageLimits
from subsync.utils.helpers import utcnow

from conftest import WEBHOOK_SECRET, checkout_event, subscription_event


@pytest.fixture()
def file_app(tmp_path):
    app = create_app(config_overrides={
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'subsync.db'}",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "RATELIMIT_ENABLED": False,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def reconciler(file_app):
    return file_app.extensions["reconciler"]


def _seed(app, user_id="U1"):
    now = utcnow()
    with app.app_context():
        db.session.add(Membership(
            user_id=user_id, plan_id="pro", status="active", duration_type="monthly",
            start_date=now, end_date=now + timedelta(days=30), next_renewal_date=now + timedelta(days=30),
            auto_renew=True, purchase_amount=19, currency="USD",
            provider_customer_id=f"cus_{user_id}", provider_subscription_id=f"sub_{user_id}",
        ))
        db.session.commit()


def _race_before_claim(monkeypatch, competing):
    """Run `competing()` once, right before the first event claim."""
    real_claim = engine_module.claim_event
    fired = []

    def claim(session, event, **kwargs):
        if not fired:
            fired.append(event.id)
            competing()
        return real_claim(session, event, **kwargs)

    monkeypatch.setattr(engine_module, "claim_event", claim)
    return fired


def test_stale_membership_version_is_retried_and_applied(file_app, reconciler, monkeypatch):
    _seed(file_app)

    def bump_version():
        # Separate pooled connection, committed immediately
        with db.engine.begin() as conn:
            conn.execute(text("UPDATE memberships SET version = version + 1 WHERE user_id = 'U1'"))

    fired = _race_before_claim(monkeypatch, bump_version)
    with file_app.app_context():
        outcome = reconciler.process(parse_event(subscription_event("evt_del", "customer.subscription.deleted")))
        assert fired == ["evt_del"]
        assert outcome.status == APPLIED

        m = db.session.query(Membership).filter_by(user_id="U1").one()
        assert m.status == "cancelled"
        assert m.version == 3
        assert db.session.query(ProcessedEvent).count() == 1


def test_same_checkout_on_two_workers_grants_once(file_app, reconciler, monkeypatch, caplog):
    event = parse_event(checkout_event())
    inner = []

    def other_worker():
        with file_app.app_context():
            inner.append(reconciler.process(event))

    _race_before_claim(monkeypatch, other_worker)
    with file_app.app_context(), caplog.at_level(logging.INFO, logger="subsync"):
        outcome = reconciler.process(event)
        assert [o.status for o in inner] == [APPLIED]
        assert outcome.status == DUPLICATE

        assert db.session.query(Membership).count() == 1
        assert db.session.query(PaymentRecord).count() == 1
        assert db.session.query(UsageLimits).count() == 1
    resets = [r for r in caplog.records if "usage_limits_reset" in r.getMessage()]
    assert len(resets) == 1


def test_two_first_checkouts_for_one_user_retry_instead_of_failing(file_app, reconciler, monkeypatch):
    first = parse_event(checkout_event(ev_id="evt_checkout_a", duration="monthly", amount_total=1900))
    second = parse_event(checkout_event(ev_id="evt_checkout_b", duration="yearly", amount_total=9900))
    inner = []

    def other_worker():
        with file_app.app_context():
            inner.append(reconciler.process(first))

    _race_before_claim(monkeypatch, other_worker)
    with file_app.app_context():
        # Sees no membership, then loses the insert to the other worker
        outcome = reconciler.process(second)
        assert [o.status for o in inner] == [APPLIED]
        assert outcome.status == APPLIED

        m = db.session.query(Membership).filter_by(user_id="U1").one()
        assert m.duration_type == "yearly"
        assert db.session.query(PaymentRecord).count() == 2
        assert db.session.query(UsageLimits).count() == 1
        assert {e.event_id for e in db.session.query(ProcessedEvent)} == {"evt_checkout_a", "evt_checkout_b"}


def test_integrity_error_after_claim_for_recorded_event_is_duplicate(file_app, reconciler, monkeypatch):
    _seed(file_app)

    def collide(ctx, event, membership):
        raise IntegrityError("INSERT INTO processed_events", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setitem(router.HANDLERS, "customer.subscription.deleted", collide)
    monkeypatch.setattr(engine_module, "was_processed", lambda session, event_id: True)
    with file_app.app_context():
        outcome = reconciler.process(parse_event(subscription_event("evt_del", "customer.subscription.deleted")))
        assert outcome.status == DUPLICATE
        assert db.session.query(Membership).filter_by(user_id="U1").one().status == "active"
