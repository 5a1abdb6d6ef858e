from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

_CENTS = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(ts: Any) -> Optional[datetime]:
    if ts in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


def minor_to_amount(value: Any) -> Decimal:
    """Provider amounts are integers in minor units (9900 -> Decimal('99.00'))."""
    try:
        return (Decimal(int(value)) / 100).quantize(_CENTS)
    except (TypeError, ValueError, InvalidOperation):
        return Decimal("0.00")


def safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)
