"""
Typed envelope for inbound provider events.

`parse_event` turns the decoded webhook body into exactly one of the frozen
dataclasses below. Handlers only ever see these types, never the raw dict.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from subsync.billing.errors import MalformedEvent
from subsync.utils.helpers import from_unix, minor_to_amount, safe_int

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
TRIAL_WILL_END = "customer.subscription.trial_will_end"
INVOICE_UPCOMING = "invoice.upcoming"


@dataclass(frozen=True)
class CheckoutSessionCompleted:
    id: str
    type: str
    created: Optional[datetime]
    session_id: Optional[str]
    user_id: Optional[str]
    plan_id: Optional[str]
    duration_type: Optional[str]
    amount: Decimal
    currency: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_intent_id: Optional[str]
    payment_method: str


@dataclass(frozen=True)
class SubscriptionFact:
    id: str
    type: str
    created: Optional[datetime]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: Optional[str]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    trial_end: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionChanged(SubscriptionFact):
    """customer.subscription.created and customer.subscription.updated"""


@dataclass(frozen=True)
class SubscriptionDeleted(SubscriptionFact):
    pass


@dataclass(frozen=True)
class TrialWillEnd(SubscriptionFact):
    pass


@dataclass(frozen=True)
class InvoiceFact:
    id: str
    type: str
    created: Optional[datetime]
    invoice_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_intent_id: Optional[str]
    amount_paid: Decimal
    amount_due: Decimal
    currency: str
    attempt_count: int
    description: Optional[str]
    next_payment_attempt: Optional[datetime]


@dataclass(frozen=True)
class InvoicePaymentSucceeded(InvoiceFact):
    pass


@dataclass(frozen=True)
class InvoicePaymentFailed(InvoiceFact):
    pass


@dataclass(frozen=True)
class InvoiceUpcoming(InvoiceFact):
    pass


@dataclass(frozen=True)
class UnknownEvent:
    id: str
    type: str
    created: Optional[datetime]
    data: Dict[str, Any] = field(default_factory=dict, compare=False)


Event = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    InvoiceUpcoming,
    UnknownEvent,
]


def _ref(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the expanded object
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _currency(value: Any) -> str:
    return (_str(value) or "usd").upper()


def _obj(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _items(value: Any) -> list:
    # List-object wrapper: {"object": "list", "data": [...]}
    data = _obj(value).get("data")
    return data if isinstance(data, list) else []


def _first(mapping: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = _str(mapping.get(key))
        if value:
            return value
    return None


def _checkout(base: Dict[str, Any], obj: Dict[str, Any]) -> CheckoutSessionCompleted:
    meta = _obj(obj.get("metadata"))
    methods = obj.get("payment_method_types")
    methods = methods if isinstance(methods, list) else []
    return CheckoutSessionCompleted(
        **base,
        session_id=_str(obj.get("id")),
        user_id=_str(obj.get("client_reference_id")) or _first(meta, "userId", "user_id"),
        plan_id=_first(meta, "planId", "plan_id"),
        duration_type=(_first(meta, "durationType", "duration_type") or "").lower() or None,
        amount=minor_to_amount(obj.get("amount_total")),
        currency=_currency(meta.get("currency") or obj.get("currency")),
        customer_id=_ref(obj.get("customer")),
        subscription_id=_ref(obj.get("subscription")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        payment_method=_str(meta.get("paymentMethod")) or (_str(methods[0]) if methods else None) or "card",
    )


def _subscription(cls, base: Dict[str, Any], obj: Dict[str, Any]) -> SubscriptionFact:
    period_end = obj.get("current_period_end")
    if period_end is None:
        # Newer API versions carry the period on the subscription items
        items = _items(obj.get("items"))
        if items and isinstance(items[0], dict):
            period_end = items[0].get("current_period_end")
    return cls(
        **base,
        subscription_id=_str(obj.get("id")),
        customer_id=_ref(obj.get("customer")),
        status=_str(obj.get("status")),
        current_period_end=from_unix(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        trial_end=from_unix(obj.get("trial_end")),
    )


def _invoice(cls, base: Dict[str, Any], obj: Dict[str, Any]) -> InvoiceFact:
    lines = _items(obj.get("lines"))
    description = None
    if lines and isinstance(lines[0], dict):
        description = _str(lines[0].get("description"))
    return cls(
        **base,
        invoice_id=_str(obj.get("id")),
        customer_id=_ref(obj.get("customer")),
        subscription_id=_ref(obj.get("subscription")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        amount_paid=minor_to_amount(obj.get("amount_paid")),
        amount_due=minor_to_amount(obj.get("amount_due")),
        currency=_currency(obj.get("currency")),
        attempt_count=safe_int(obj.get("attempt_count"), 0),
        description=description,
        next_payment_attempt=from_unix(obj.get("next_payment_attempt")),
    )


_PARSERS = {
    CHECKOUT_SESSION_COMPLETED: _checkout,
    SUBSCRIPTION_CREATED: lambda base, obj: _subscription(SubscriptionChanged, base, obj),
    SUBSCRIPTION_UPDATED: lambda base, obj: _subscription(SubscriptionChanged, base, obj),
    SUBSCRIPTION_DELETED: lambda base, obj: _subscription(SubscriptionDeleted, base, obj),
    TRIAL_WILL_END: lambda base, obj: _subscription(TrialWillEnd, base, obj),
    INVOICE_PAYMENT_SUCCEEDED: lambda base, obj: _invoice(InvoicePaymentSucceeded, base, obj),
    INVOICE_PAYMENT_FAILED: lambda base, obj: _invoice(InvoicePaymentFailed, base, obj),
    INVOICE_UPCOMING: lambda base, obj: _invoice(InvoiceUpcoming, base, obj),
}

RECOGNIZED_TYPES = frozenset(_PARSERS)


def parse_event(raw: Any) -> Event:
    """Validate the `{id, type, data}` envelope and build the matching variant."""
    if not isinstance(raw, dict):
        raise MalformedEvent("event body must be a JSON object")
    ev_id = raw.get("id")
    ev_type = raw.get("type")
    data = raw.get("data")
    if not isinstance(ev_id, str) or not ev_id:
        raise MalformedEvent("event id missing")
    if not isinstance(ev_type, str) or not ev_type:
        raise MalformedEvent("event type missing")
    if not isinstance(data, dict):
        raise MalformedEvent("event data missing")

    base = {"id": ev_id, "type": ev_type, "created": from_unix(raw.get("created"))}

    parser = _PARSERS.get(ev_type)
    if parser is None:
        return UnknownEvent(data=data, **base)

    obj = data.get("object")
    if not isinstance(obj, dict):
        raise MalformedEvent(f"{ev_type} without data.object")
    return parser(base, obj)
