class ReconciliationError(Exception):
    """Base class for everything the reconciliation engine raises on purpose."""


class RejectedEvent(ReconciliationError):
    """The payload is refused outright (4xx, never retried)."""


class InvalidSignature(RejectedEvent):
    pass


class MalformedEvent(RejectedEvent):
    pass


class AlreadyProcessed(ReconciliationError):
    """The event id is already in the idempotency ledger; acknowledge as a no-op."""

    def __init__(self, event_id: str):
        super().__init__(event_id)
        self.event_id = event_id


class PermanentFailure(ReconciliationError):
    """
    Redelivery cannot fix this event. It is logged, recorded as skipped and
    acknowledged with a 200.
    """

    reason = "permanent_failure"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.reason)
        self.context = context


class MissingCorrelationData(PermanentFailure):
    reason = "missing_correlation_data"


class ConsistencyGap(PermanentFailure):
    """A provider fact refers to a customer with no local membership."""

    reason = "consistency_gap"


class LedgerWriteError(PermanentFailure):
    reason = "ledger_write_error"


class ConcurrentWriteConflict(ReconciliationError):
    """Another writer changed the membership row first; retried once locally."""


class TransientStorageError(ReconciliationError):
    """Storage failed in a way a later redelivery can fix (surfaced as 5xx)."""


class QuotaExceeded(ReconciliationError):
    def __init__(self, resource: str, cap: int, used: int):
        super().__init__(f"{resource} quota exhausted ({used}/{cap})")
        self.resource = resource
        self.cap = cap
        self.used = used
