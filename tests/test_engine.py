import logging
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from subsync.billing import router
from subsync.billing.engine import APPLIED, DUPLICATE, IGNORED, SKIPPED
from subsync.billing.errors import ConcurrentWriteConflict, TransientStorageError
from subsync.billing.events import parse_event
from subsync.extensions import db
from subsync.models import Membership, PaymentRecord, ProcessedEvent, UsageLimits
from subsync.utils.helpers import utcnow

from conftest import checkout_event, invoice_event, make_event, subscription_event


def _membership(user_id="U1"):
    return db.session.query(Membership).filter_by(user_id=user_id).one_or_none()


def _payments(user_id="U1"):
    return db.session.query(PaymentRecord).filter_by(user_id=user_id).order_by(PaymentRecord.id).all()


def test_yearly_checkout_activates_membership(app, engine):
    with app.app_context():
        before = utcnow()
        outcome = engine.process(parse_event(checkout_event(plan_id="pro", duration="yearly", amount_total=9900)))
        assert outcome.status == APPLIED

        m = _membership()
        assert m.status == "active"
        assert m.duration_type == "yearly"
        assert m.auto_renew is True
        assert m.provider_customer_id == "cus_U1"
        assert before + timedelta(days=364) < m.end_date <= utcnow() + timedelta(days=365)

        usage = db.session.query(UsageLimits).filter_by(user_id="U1").one()
        assert usage.monthly_use_cases == 200
        assert usage.monthly_api_calls == 10000
        assert usage.used_use_cases == 0

        payments = _payments()
        assert len(payments) == 1
        assert payments[0].status == "completed"
        assert payments[0].amount == Decimal("99.00")
        assert payments[0].plan_name == "Pro"
        assert payments[0].meta["durationType"] == "yearly"

        assert db.session.get(ProcessedEvent, "evt_checkout_1").outcome == "applied"


def test_replayed_event_is_acknowledged_without_side_effects(app, engine):
    with app.app_context():
        event = parse_event(checkout_event())
        assert engine.process(event).status == APPLIED

        usage = db.session.query(UsageLimits).filter_by(user_id="U1").one()
        usage.used_blogs = 4
        db.session.commit()

        again = engine.process(event)
        assert again.status == DUPLICATE
        assert len(_payments()) == 1
        # A replay must not reset usage a second time
        assert db.session.query(UsageLimits).filter_by(user_id="U1").one().used_blogs == 4


def test_third_failed_attempt_suspends_and_leaves_usage_alone(app, engine):
    with app.app_context():
        engine.process(parse_event(checkout_event()))
        usage = db.session.query(UsageLimits).filter_by(user_id="U1").one()
        usage.used_tutorials = 7
        db.session.commit()

        outcome = engine.process(parse_event(invoice_event("evt_fail_3", attempt_count=3)))
        assert outcome.status == APPLIED
        assert _membership().status == "suspended"

        failed = [p for p in _payments() if p.status == "failed"]
        assert len(failed) == 1
        assert failed[0].amount == Decimal("19.00")
        assert failed[0].meta["attemptCount"] == 3
        assert db.session.query(UsageLimits).filter_by(user_id="U1").one().used_tutorials == 7


def test_failed_attempts_suspend_only_at_threshold(app, engine, seed_membership):
    seed_membership()
    with app.app_context():
        seen = []
        for attempt in (1, 2, 3):
            engine.process(parse_event(invoice_event(f"evt_fail_{attempt}", attempt_count=attempt)))
            db.session.expire_all()
            seen.append(_membership().status)
        assert seen == ["active", "active", "suspended"]
        assert len([p for p in _payments() if p.status == "failed"]) == 3


def test_update_for_unknown_customer_is_skipped_and_recorded(app, engine, caplog):
    with app.app_context(), caplog.at_level(logging.WARNING, logger="subsync"):
        outcome = engine.process(parse_event(subscription_event("evt_orphan", customer="cus_missing")))
        assert outcome.status == SKIPPED
        assert outcome.reason == "consistency_gap"
        assert db.session.query(Membership).count() == 0

        row = db.session.get(ProcessedEvent, "evt_orphan")
        assert row.outcome == "skipped"
        assert row.notes == "consistency_gap"
    assert any("consistency_gap" in r.getMessage() and "cus_missing" in r.getMessage() for r in caplog.records)


def test_skipped_event_redelivery_is_duplicate(app, engine):
    with app.app_context():
        event = parse_event(subscription_event("evt_orphan", customer="cus_missing"))
        assert engine.process(event).status == SKIPPED
        assert engine.process(event).status == DUPLICATE


def test_checkout_without_plan_is_skipped(app, engine):
    with app.app_context():
        outcome = engine.process(parse_event(checkout_event(ev_id="evt_noplan", plan_id=None)))
        assert outcome.status == SKIPPED
        assert outcome.reason == "missing_correlation_data"
        assert _membership() is None
        assert db.session.get(ProcessedEvent, "evt_noplan").outcome == "skipped"


def test_checkout_for_unknown_plan_is_skipped(app, engine):
    with app.app_context():
        outcome = engine.process(parse_event(checkout_event(ev_id="evt_badplan", plan_id="platinum")))
        assert outcome.reason == "missing_correlation_data"
        assert db.session.query(PaymentRecord).count() == 0


def test_cancellation_is_idempotent_across_distinct_events(app, engine, seed_membership):
    seed_membership()
    with app.app_context():
        engine.process(parse_event(subscription_event("evt_del_1", "customer.subscription.deleted")))
        first = _membership()
        cancelled_at = first.cancelled_at
        assert first.status == "cancelled"
        assert first.auto_renew is False
        assert first.next_renewal_date is None

        outcome = engine.process(parse_event(subscription_event("evt_del_2", "customer.subscription.deleted")))
        assert outcome.status == APPLIED
        db.session.expire_all()
        second = _membership()
        assert second.status == "cancelled"
        assert second.cancelled_at == cancelled_at


def test_late_update_does_not_resurrect_deleted_subscription(app, engine, seed_membership):
    seed_membership()
    with app.app_context():
        engine.process(parse_event(subscription_event("evt_del", "customer.subscription.deleted")))
        engine.process(parse_event(subscription_event("evt_upd_late", status="active")))
        db.session.expire_all()
        assert _membership().status == "cancelled"


def test_subscription_update_syncs_status_and_period(app, engine, seed_membership):
    seed_membership()
    period_end = int((utcnow() + timedelta(days=45)).timestamp())
    with app.app_context():
        engine.process(parse_event(subscription_event("evt_pd", status="past_due", period_end=period_end, cancel_at_period_end=True)))
        m = _membership()
        assert m.status == "past_due"
        assert m.auto_renew is False
        assert m.next_renewal_date is None
        assert m.end_date > utcnow() + timedelta(days=40)


def test_payment_succeeded_records_payment_without_status_change(app, engine, seed_membership):
    seed_membership(status="past_due")
    with app.app_context():
        outcome = engine.process(parse_event(invoice_event(
            "evt_paid", "invoice.payment_succeeded", amount_paid=1900, payment_intent="pi_paid",
        )))
        assert outcome.status == APPLIED
        assert _membership().status == "past_due"
        payments = _payments()
        assert len(payments) == 1
        assert payments[0].status == "completed"
        assert payments[0].provider_payment_intent_id == "pi_paid"
        assert payments[0].payment_method == "stripe"


def test_notices_trigger_notifications_after_commit(app, engine, seed_membership, notifier):
    seed_membership()
    with app.app_context():
        engine.process(parse_event(subscription_event("evt_trial", "customer.subscription.trial_will_end")))
        engine.process(parse_event(invoice_event("evt_upcoming", "invoice.upcoming")))
        assert db.session.query(PaymentRecord).count() == 0
        assert _membership().status == "active"
    kinds = [(kind, user_id) for kind, user_id, _ in notifier.sent]
    assert kinds == [("trial_ending", "U1"), ("invoice_upcoming", "U1")]
    assert notifier.sent[1][2]["amount_due"] == "19.00"


def test_notifier_failure_does_not_undo_the_event(app, engine, seed_membership, monkeypatch):
    class Broken:
        def notify(self, kind, user_id, payload):
            raise RuntimeError("smtp down")

    monkeypatch.setattr(engine.settings, "notifier", Broken())
    seed_membership()
    with app.app_context():
        outcome = engine.process(parse_event(subscription_event("evt_trial", "customer.subscription.trial_will_end")))
        assert outcome.status == APPLIED
        assert db.session.get(ProcessedEvent, "evt_trial") is not None


def test_unknown_event_type_is_ignored_and_not_recorded(app, engine):
    with app.app_context():
        outcome = engine.process(parse_event(make_event("evt_refund", "charge.refunded", {"id": "ch_1"})))
        assert outcome.status == IGNORED
        assert db.session.get(ProcessedEvent, "evt_refund") is None


def test_write_conflict_is_retried_once(app, engine, seed_membership, monkeypatch):
    seed_membership()
    original = engine._apply
    calls = []

    def flaky(session, event, handler):
        calls.append(event.id)
        if len(calls) == 1:
            raise ConcurrentWriteConflict("lost race")
        return original(session, event, handler)

    monkeypatch.setattr(engine, "_apply", flaky)
    with app.app_context():
        outcome = engine.process(parse_event(subscription_event("evt_race", "customer.subscription.deleted")))
        assert outcome.status == APPLIED
        assert len(calls) == 2
        assert _membership().status == "cancelled"


def test_persistent_write_conflict_is_transient(app, engine, seed_membership, monkeypatch):
    seed_membership()

    def always_conflict(session, event, handler):
        raise ConcurrentWriteConflict("lost race")

    monkeypatch.setattr(engine, "_apply", always_conflict)
    with app.app_context():
        with pytest.raises(TransientStorageError):
            engine.process(parse_event(subscription_event("evt_race", "customer.subscription.deleted")))
        assert db.session.get(ProcessedEvent, "evt_race") is None


def test_storage_failure_rolls_back_everything(app, engine, seed_membership, monkeypatch):
    seed_membership()

    def broken_handler(ctx, event, membership):
        membership.status = "suspended"
        ctx.session.flush()
        raise OperationalError("UPDATE memberships", {}, Exception("connection reset"))

    monkeypatch.setitem(router.HANDLERS, "invoice.payment_failed", broken_handler)
    with app.app_context():
        with pytest.raises(TransientStorageError):
            engine.process(parse_event(invoice_event("evt_boom", attempt_count=3)))
        db.session.expire_all()
        assert _membership().status == "active"
        assert db.session.get(ProcessedEvent, "evt_boom") is None

    # The redelivery succeeds once storage is back
    monkeypatch.undo()
    with app.app_context():
        assert engine.process(parse_event(invoice_event("evt_boom", attempt_count=3))).status == APPLIED
        assert _membership().status == "suspended"
