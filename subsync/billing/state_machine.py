"""
Membership state machine.

`transition(current, fact, now)` is the only place membership status, dates
and the auto-renew flag are computed. It is a pure function over
`MembershipState` values; persistence lives in the engine.

    checkout.session.completed      none|any -> active
    customer.subscription.updated   any -> PROVIDER_STATUS_MAP[status]
    customer.subscription.deleted   any -> cancelled
    invoice.payment_failed          any -> suspended when attempt_count >= 3
    invoice.payment_succeeded       no change
    trial_will_end, invoice.upcoming  no change
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from subsync.billing.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
)
from subsync.billing.plans import DURATION_DAYS, Plan
from subsync.models.membership import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PAST_DUE,
    STATUS_PENDING,
    STATUS_SUSPENDED,
)

PROVIDER_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "trialing": STATUS_ACTIVE,
    "past_due": STATUS_PAST_DUE,
    "canceled": STATUS_CANCELLED,
    "unpaid": STATUS_SUSPENDED,
    "incomplete": STATUS_PENDING,
    "incomplete_expired": STATUS_EXPIRED,
}

# Failed attempts after which the membership is suspended
SUSPEND_AFTER_ATTEMPTS = 3

_FIELDS = (
    "user_id",
    "plan_id",
    "status",
    "duration_type",
    "start_date",
    "end_date",
    "next_renewal_date",
    "auto_renew",
    "purchase_amount",
    "currency",
    "payment_method",
    "provider_customer_id",
    "provider_subscription_id",
    "provider_payment_intent_id",
    "cancelled_at",
)


@dataclass(frozen=True)
class MembershipState:
    user_id: str
    plan_id: str
    status: str
    duration_type: str
    start_date: datetime
    end_date: datetime
    next_renewal_date: Optional[datetime] = None
    auto_renew: bool = False
    purchase_amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    payment_method: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_payment_intent_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "MembershipState":
        values = {name: getattr(row, name) for name in _FIELDS}
        if values["purchase_amount"] is not None:
            values["purchase_amount"] = Decimal(values["purchase_amount"])
        values["auto_renew"] = bool(values["auto_renew"])
        return cls(**values)

    def apply_to(self, row) -> None:
        for name in _FIELDS:
            if getattr(row, name) != getattr(self, name):
                setattr(row, name, getattr(self, name))


def _enforce_invariants(state: MembershipState) -> MembershipState:
    if state.status == STATUS_CANCELLED and (state.auto_renew or state.next_renewal_date):
        state = replace(state, auto_renew=False, next_renewal_date=None)
    return state


def _on_checkout(current: Optional[MembershipState], fact: CheckoutSessionCompleted, now: datetime, plan: Optional[Plan]) -> MembershipState:
    if plan is None:
        raise ValueError("checkout transition needs the resolved plan")
    duration_type = fact.duration_type if fact.duration_type in DURATION_DAYS else plan.default_duration
    end_date = now + timedelta(days=plan.duration_days(duration_type))
    auto_renew = bool(fact.subscription_id)
    values = dict(
        user_id=fact.user_id,
        plan_id=plan.id,
        status=STATUS_ACTIVE,
        duration_type=duration_type,
        start_date=now,
        end_date=end_date,
        next_renewal_date=end_date if auto_renew else None,
        auto_renew=auto_renew,
        purchase_amount=fact.amount,
        currency=fact.currency,
        payment_method=fact.payment_method,
        provider_payment_intent_id=fact.payment_intent_id,
        cancelled_at=None,
    )
    if current is None:
        return MembershipState(
            provider_customer_id=fact.customer_id,
            provider_subscription_id=fact.subscription_id,
            **values,
        )
    # Upsert: keep known provider ids when the session does not carry new ones
    return replace(
        current,
        provider_customer_id=fact.customer_id or current.provider_customer_id,
        provider_subscription_id=fact.subscription_id or current.provider_subscription_id,
        **values,
    )


def _on_subscription_changed(current: MembershipState, fact: SubscriptionChanged, now: datetime, plan: Optional[Plan]) -> MembershipState:
    cancelled_by_delete = (
        current.status == STATUS_CANCELLED
        and current.cancelled_at is not None
        and fact.subscription_id
        and fact.subscription_id == current.provider_subscription_id
    )
    if cancelled_by_delete:
        # A deletion already ended this subscription; a refresh cannot undo it.
        return current

    status = PROVIDER_STATUS_MAP.get(fact.status or "", current.status)
    end_date = fact.current_period_end or current.end_date
    state = replace(
        current,
        status=status,
        end_date=end_date,
        next_renewal_date=None if fact.cancel_at_period_end else end_date,
        auto_renew=not fact.cancel_at_period_end,
        provider_subscription_id=fact.subscription_id or current.provider_subscription_id,
    )
    if status == STATUS_CANCELLED and state.cancelled_at is None:
        state = replace(state, cancelled_at=now)
    return state


def _on_subscription_deleted(current: MembershipState, fact: SubscriptionDeleted, now: datetime, plan: Optional[Plan]) -> MembershipState:
    return replace(
        current,
        status=STATUS_CANCELLED,
        auto_renew=False,
        next_renewal_date=None,
        cancelled_at=current.cancelled_at or now,
        provider_subscription_id=current.provider_subscription_id or fact.subscription_id,
    )


def _on_payment_failed(current: MembershipState, fact: InvoicePaymentFailed, now: datetime, plan: Optional[Plan]) -> MembershipState:
    if fact.attempt_count >= SUSPEND_AFTER_ATTEMPTS:
        return replace(current, status=STATUS_SUSPENDED)
    # Intermediate attempts follow the provider's own retry schedule
    return current


_TRANSITIONS: Dict[type, Callable] = {
    CheckoutSessionCompleted: _on_checkout,
    SubscriptionChanged: _on_subscription_changed,
    SubscriptionDeleted: _on_subscription_deleted,
    InvoicePaymentFailed: _on_payment_failed,
}


def transition(current: Optional[MembershipState], fact, now: datetime, plan: Optional[Plan] = None) -> Optional[MembershipState]:
    """
    Next membership state for `fact`, or `current` unchanged when the fact
    does not move the state. Only a checkout may start from no membership.
    """
    step = _TRANSITIONS.get(type(fact))
    if step is None:
        return current
    if current is None and not isinstance(fact, CheckoutSessionCompleted):
        return None
    return _enforce_invariants(step(current, fact, now, plan))
