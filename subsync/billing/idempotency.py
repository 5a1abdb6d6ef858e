import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import FlushError

from subsync.billing.errors import AlreadyProcessed
from subsync.models import ProcessedEvent
from subsync.models.processed_event import OUTCOME_APPLIED, OUTCOME_SKIPPED
from subsync.observability import log_event

logger = logging.getLogger(__name__)


def claim_event(session, event, *, now, outcome: str = OUTCOME_APPLIED, notes: Optional[str] = None) -> ProcessedEvent:
    """
    Insert the event id into the ledger inside the caller's open transaction.

    The row becomes durable only together with the business mutation that
    follows it. A unique-key violation means another delivery already
    handled (or is committing) this event; the caller must roll back.
    """
    row = ProcessedEvent(
        event_id=event.id,
        event_type=event.type,
        outcome=outcome,
        notes=notes,
        processed_at=now,
    )
    session.add(row)
    try:
        session.flush()
    except (IntegrityError, FlushError) as exc:
        raise AlreadyProcessed(event.id) from exc
    return row


def was_processed(session, event_id: str) -> bool:
    return session.get(ProcessedEvent, event_id) is not None


def record_skip(session, event, reason: str, *, now) -> bool:
    """
    Mark a permanently unprocessable event as handled, in its own
    transaction, so a redelivery short-circuits. Returns False when a
    concurrent delivery recorded it first.
    """
    try:
        claim_event(session, event, now=now, outcome=OUTCOME_SKIPPED, notes=reason[:255])
        session.commit()
    except AlreadyProcessed:
        session.rollback()
        log_event(logger, "skip_already_recorded", event_id=event.id, reason=reason)
        return False
    return True
