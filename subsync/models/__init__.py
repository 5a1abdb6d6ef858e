from .membership import Membership
from .payment_record import PaymentRecord
from .usage_limits import UsageLimits
from .processed_event import ProcessedEvent

__all__ = ["Membership", "PaymentRecord", "UsageLimits", "ProcessedEvent"]
