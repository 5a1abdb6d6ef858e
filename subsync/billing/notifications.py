import logging
from typing import Any, Dict, Protocol

from subsync.observability import log_event

logger = logging.getLogger(__name__)

TRIAL_ENDING = "trial_ending"
INVOICE_UPCOMING = "invoice_upcoming"
KINDS = (TRIAL_ENDING, INVOICE_UPCOMING)


class Notifier(Protocol):
    def notify(self, kind: str, user_id: str, payload: Dict[str, Any]) -> None:
        ...


class LogNotifier:
    """Default notifier: records the intent as a structured log line."""

    def notify(self, kind: str, user_id: str, payload: Dict[str, Any]) -> None:
        log_event(logger, "notification_intent", kind=kind, user_id=user_id, payload=payload)


def trigger(notifier: Notifier, kind: str, user_id: str, payload: Dict[str, Any]) -> bool:
    """
    Fire-and-forget. Runs after the reconciliation transaction has committed;
    a notifier failure is logged and dropped.
    """
    if kind not in KINDS:
        raise ValueError(f"unknown notification kind {kind!r}")
    try:
        notifier.notify(kind, user_id, payload)
    except Exception:
        logger.exception("notification_failed kind=%s user_id=%s", kind, user_id)
        return False
    return True
