from subsync.extensions import db
from subsync.utils.helpers import utcnow

OUTCOME_APPLIED = "applied"
OUTCOME_SKIPPED = "skipped"


class ProcessedEvent(db.Model):
    """Idempotency ledger: one row per provider event id that has been durably handled."""

    __tablename__ = "processed_events"

    event_id = db.Column(db.String(255), primary_key=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    outcome = db.Column(db.String(20), nullable=False, default=OUTCOME_APPLIED, index=True)
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<ProcessedEvent {self.event_id!r} type={self.event_type!r} outcome={self.outcome!r}>"
