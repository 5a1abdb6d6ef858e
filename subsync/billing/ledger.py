import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from subsync.billing.errors import LedgerWriteError
from subsync.models import PaymentRecord
from subsync.observability import log_event

logger = logging.getLogger(__name__)


def append_payment(
    session,
    *,
    user_id: str,
    amount: Decimal,
    currency: str,
    status: str,
    plan_name: str,
    duration_type: str,
    payment_method: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now=None,
) -> PaymentRecord:
    """
    Append one immutable payment attempt. The row is flushed immediately so a
    constraint failure is attributed to the ledger and not to a later write.
    """
    record = PaymentRecord(
        user_id=user_id,
        amount=amount,
        currency=(currency or "USD").upper(),
        status=status,
        payment_method=payment_method,
        provider_payment_intent_id=payment_intent_id,
        plan_name=plan_name,
        duration_type=duration_type,
        meta={k: v for k, v in (metadata or {}).items() if v is not None},
    )
    if now is not None:
        record.created_at = now
    session.add(record)
    try:
        session.flush()
    except IntegrityError as exc:
        raise LedgerWriteError("payment record rejected", user_id=user_id, status=status) from exc

    log_event(
        logger,
        "payment_recorded",
        user_id=user_id,
        status=status,
        amount=str(record.amount),
        currency=record.currency,
    )
    return record
