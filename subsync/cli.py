import json
from datetime import timedelta

import click
from flask.cli import with_appcontext
from subsync.billing.entitlements import consume, remaining
from subsync.billing.errors import QuotaExceeded
from subsync.extensions import db
from subsync.models import Membership, PaymentRecord, ProcessedEvent, UsageLimits
from subsync.models.usage_limits import RESOURCES
from subsync.utils.helpers import utcnow

# Providers redeliver for up to a few days; never prune inside that window
MIN_RETENTION_DAYS = 30


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str, sort_keys=True))


@click.group()
def billing():
    """Membership reconciliation ops."""


@billing.command("membership")
@click.argument("user_id")
@with_appcontext
def billing_membership(user_id):
    m = db.session.query(Membership).filter_by(user_id=user_id).one_or_none()
    if not m:
        raise click.ClickException(f"No membership for user {user_id}")
    _echo_json({
        "user_id": m.user_id,
        "plan_id": m.plan_id,
        "status": m.status,
        "effective_status": m.effective_status(),
        "duration_type": m.duration_type,
        "start_date": m.start_date,
        "end_date": m.end_date,
        "next_renewal_date": m.next_renewal_date,
        "auto_renew": m.auto_renew,
        "purchase_amount": m.purchase_amount,
        "currency": m.currency,
        "provider_customer_id": m.provider_customer_id,
        "provider_subscription_id": m.provider_subscription_id,
        "cancelled_at": m.cancelled_at,
        "version": m.version,
    })


@billing.command("payments")
@click.argument("user_id")
@click.option("--limit", type=int, default=20, show_default=True)
@with_appcontext
def billing_payments(user_id, limit):
    rows = (
        db.session.query(PaymentRecord)
        .filter_by(user_id=user_id)
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .limit(limit)
        .all()
    )
    if not rows:
        click.echo(f"No payments for user {user_id}")
        return
    for r in rows:
        click.echo(
            f"{r.created_at:%Y-%m-%d %H:%M} {r.status:<9} {r.amount} {r.currency} "
            f"{r.plan_name} ({r.duration_type}) {json.dumps(r.meta or {}, sort_keys=True)}"
        )


@billing.command("usage")
@click.argument("user_id")
@with_appcontext
def billing_usage(user_id):
    usage = db.session.query(UsageLimits).filter_by(user_id=user_id).one_or_none()
    if not usage:
        raise click.ClickException(f"No usage limits for user {user_id}")
    data = usage.to_dict()
    for resource in RESOURCES:
        data[resource]["remaining"] = remaining(usage, resource)
    _echo_json(data)


@billing.command("consume")
@click.argument("user_id")
@click.argument("resource", type=click.Choice(RESOURCES))
@click.option("--amount", type=click.IntRange(min=1), default=1, show_default=True)
@with_appcontext
def billing_consume(user_id, resource, amount):
    """Charge AMOUNT units of RESOURCE against a user's quota (support corrections)."""
    try:
        usage = consume(db.session, user_id, resource, amount)
    except QuotaExceeded as exc:
        db.session.rollback()
        raise click.ClickException(str(exc))
    db.session.commit()
    left = remaining(usage, resource)
    click.echo(f"{user_id} {resource}: used {usage.used(resource)}, remaining {'unlimited' if left is None else left}")


@billing.command("events")
@click.option("--outcome", type=click.Choice(["applied", "skipped"]), default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@with_appcontext
def billing_events(outcome, limit):
    q = db.session.query(ProcessedEvent)
    if outcome:
        q = q.filter_by(outcome=outcome)
    for ev in q.order_by(ProcessedEvent.processed_at.desc()).limit(limit).all():
        notes = f" {ev.notes}" if ev.notes else ""
        click.echo(f"{ev.processed_at:%Y-%m-%d %H:%M:%S} {ev.event_id} {ev.event_type} {ev.outcome}{notes}")


@billing.command("prune-events")
@click.option("--days", type=int, required=True, help="Delete ledger rows older than this")
@with_appcontext
def billing_prune_events(days):
    # Safety rail: pruning inside the redelivery window would let duplicates through
    if days < MIN_RETENTION_DAYS:
        raise click.ClickException(f"Refused: keep at least {MIN_RETENTION_DAYS} days of processed events")
    cutoff = utcnow() - timedelta(days=days)
    deleted = db.session.query(ProcessedEvent).filter(ProcessedEvent.processed_at < cutoff).delete(synchronize_session=False)
    db.session.commit()
    click.echo(f"Pruned {deleted} processed events older than {days} days")


def register_cli(app):
    app.cli.add_command(billing)
