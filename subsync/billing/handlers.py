import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from subsync.billing import notifications
from subsync.billing.entitlements import reset_usage_limits
from subsync.billing.errors import ConsistencyGap, MissingCorrelationData
from subsync.billing.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    InvoiceUpcoming,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
)
from subsync.billing.ledger import append_payment
from subsync.billing.plans import PlanCatalog
from subsync.billing.state_machine import MembershipState, transition
from subsync.models import Membership
from subsync.models.membership import STATUS_SUSPENDED
from subsync.models.payment_record import PAYMENT_COMPLETED, PAYMENT_FAILED
from subsync.observability import log_event

logger = logging.getLogger(__name__)

RENEWAL_PLAN_NAME = "Subscription renewal"


@dataclass
class HandlerContext:
    session: Any
    now: datetime
    plans: PlanCatalog
    # (kind, user_id, payload) fired after commit
    notifications: List[Tuple[str, str, Dict[str, Any]]] = field(default_factory=list)

    def notify(self, kind: str, user_id: str, payload: Dict[str, Any]) -> None:
        self.notifications.append((kind, user_id, payload))


def lock_membership(session, event) -> Optional[Membership]:
    """
    Row lock on the membership the event refers to. Taken before the
    idempotency insert so both commit together.
    """
    query = session.query(Membership)
    if isinstance(event, CheckoutSessionCompleted):
        if not event.user_id:
            return None
        query = query.filter(Membership.user_id == event.user_id)
    else:
        customer_id = getattr(event, "customer_id", None)
        if not customer_id:
            return None
        query = query.filter(Membership.provider_customer_id == customer_id)
    return query.order_by(Membership.id).with_for_update().first()


def _require_membership(event, membership: Optional[Membership]) -> Membership:
    if membership is None:
        raise ConsistencyGap(
            "no membership for provider customer",
            event_type=event.type,
            customer_id=getattr(event, "customer_id", None),
            subscription_id=getattr(event, "subscription_id", None),
        )
    return membership


def _save(ctx: HandlerContext, row: Optional[Membership], state: MembershipState) -> Membership:
    if row is None:
        row = Membership(created_at=ctx.now, updated_at=ctx.now)
        state.apply_to(row)
        ctx.session.add(row)
    elif MembershipState.from_row(row) != state:
        state.apply_to(row)
        row.updated_at = ctx.now
    ctx.session.flush()
    return row


def handle_checkout_completed(ctx: HandlerContext, event: CheckoutSessionCompleted, membership: Optional[Membership]) -> None:
    if not event.user_id or not event.plan_id:
        raise MissingCorrelationData(
            "checkout session without user or plan",
            session_id=event.session_id,
            user_id=event.user_id,
            plan_id=event.plan_id,
        )
    plan = ctx.plans.get_plan(event.plan_id)
    if plan is None:
        raise MissingCorrelationData("unknown plan", session_id=event.session_id, plan_id=event.plan_id)

    current = MembershipState.from_row(membership) if membership is not None else None
    state = transition(current, event, ctx.now, plan)
    row = _save(ctx, membership, state)

    append_payment(
        ctx.session,
        user_id=row.user_id,
        amount=event.amount,
        currency=event.currency,
        status=PAYMENT_COMPLETED,
        payment_method=event.payment_method,
        payment_intent_id=event.payment_intent_id,
        plan_name=plan.name,
        duration_type=state.duration_type,
        metadata={
            "sessionId": event.session_id,
            "subscriptionId": event.subscription_id,
            "customerId": event.customer_id,
            "durationType": state.duration_type,
        },
        now=ctx.now,
    )
    reset_usage_limits(ctx.session, row.user_id, plan.tier, ctx.now)

    log_event(
        logger,
        "membership_activated",
        user_id=row.user_id,
        plan_id=plan.id,
        duration_type=state.duration_type,
        end_date=state.end_date,
    )


def handle_subscription_changed(ctx: HandlerContext, event: SubscriptionChanged, membership: Optional[Membership]) -> None:
    membership = _require_membership(event, membership)
    before = membership.status
    state = transition(MembershipState.from_row(membership), event, ctx.now)
    _save(ctx, membership, state)
    log_event(
        logger,
        "membership_synced",
        user_id=membership.user_id,
        provider_status=event.status,
        status_before=before,
        status=state.status,
        end_date=state.end_date,
        auto_renew=state.auto_renew,
    )


def handle_subscription_deleted(ctx: HandlerContext, event: SubscriptionDeleted, membership: Optional[Membership]) -> None:
    membership = _require_membership(event, membership)
    state = transition(MembershipState.from_row(membership), event, ctx.now)
    _save(ctx, membership, state)
    log_event(logger, "membership_cancelled", user_id=membership.user_id, subscription_id=event.subscription_id)


def _invoice_metadata(event) -> Dict[str, Any]:
    return {
        "invoiceId": event.invoice_id,
        "subscriptionId": event.subscription_id,
        "customerId": event.customer_id,
    }


def handle_payment_succeeded(ctx: HandlerContext, event: InvoicePaymentSucceeded, membership: Optional[Membership]) -> None:
    # Money captured only; the entitlement window moves with subscription.updated
    membership = _require_membership(event, membership)
    append_payment(
        ctx.session,
        user_id=membership.user_id,
        amount=event.amount_paid,
        currency=event.currency,
        status=PAYMENT_COMPLETED,
        payment_method="stripe",
        payment_intent_id=event.payment_intent_id,
        plan_name=event.description or RENEWAL_PLAN_NAME,
        duration_type=membership.duration_type,
        metadata=_invoice_metadata(event),
        now=ctx.now,
    )


def handle_payment_failed(ctx: HandlerContext, event: InvoicePaymentFailed, membership: Optional[Membership]) -> None:
    membership = _require_membership(event, membership)
    append_payment(
        ctx.session,
        user_id=membership.user_id,
        amount=event.amount_due,
        currency=event.currency,
        status=PAYMENT_FAILED,
        payment_method="stripe",
        payment_intent_id=event.payment_intent_id,
        plan_name=event.description or RENEWAL_PLAN_NAME,
        duration_type=membership.duration_type,
        metadata={
            **_invoice_metadata(event),
            "attemptCount": event.attempt_count,
            "failureReason": "payment_failed",
        },
        now=ctx.now,
    )
    before = membership.status
    state = transition(MembershipState.from_row(membership), event, ctx.now)
    _save(ctx, membership, state)
    if state.status == STATUS_SUSPENDED and before != STATUS_SUSPENDED:
        log_event(
            logger,
            "membership_suspended",
            level=logging.WARNING,
            user_id=membership.user_id,
            attempt_count=event.attempt_count,
            invoice_id=event.invoice_id,
        )


def handle_trial_will_end(ctx: HandlerContext, event: TrialWillEnd, membership: Optional[Membership]) -> None:
    membership = _require_membership(event, membership)
    ctx.notify(
        notifications.TRIAL_ENDING,
        membership.user_id,
        {"subscription_id": event.subscription_id, "trial_end": event.trial_end},
    )


def handle_invoice_upcoming(ctx: HandlerContext, event: InvoiceUpcoming, membership: Optional[Membership]) -> None:
    membership = _require_membership(event, membership)
    ctx.notify(
        notifications.INVOICE_UPCOMING,
        membership.user_id,
        {
            "invoice_id": event.invoice_id,
            "amount_due": str(event.amount_due),
            "currency": event.currency,
            "next_payment_attempt": event.next_payment_attempt,
        },
    )
