from typing import Callable, Dict, Optional

from subsync.billing import events, handlers

HANDLERS: Dict[str, Callable] = {
    events.CHECKOUT_SESSION_COMPLETED: handlers.handle_checkout_completed,
    events.SUBSCRIPTION_CREATED: handlers.handle_subscription_changed,
    events.SUBSCRIPTION_UPDATED: handlers.handle_subscription_changed,
    events.SUBSCRIPTION_DELETED: handlers.handle_subscription_deleted,
    events.INVOICE_PAYMENT_SUCCEEDED: handlers.handle_payment_succeeded,
    events.INVOICE_PAYMENT_FAILED: handlers.handle_payment_failed,
    events.TRIAL_WILL_END: handlers.handle_trial_will_end,
    events.INVOICE_UPCOMING: handlers.handle_invoice_upcoming,
}

_unrouted = events.RECOGNIZED_TYPES - set(HANDLERS)
if _unrouted:
    raise RuntimeError(f"event types parsed but not routed: {sorted(_unrouted)}")


def resolve_handler(event) -> Optional[Callable]:
    """Handler for the event, or None for types this service does not act on."""
    if isinstance(event, events.UnknownEvent):
        return None
    return HANDLERS[event.type]
