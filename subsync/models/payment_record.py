from sqlalchemy import CheckConstraint
from sqlalchemy.dialects.postgresql import JSONB
from subsync.extensions import db
from subsync.utils.helpers import utcnow

PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"


class PaymentRecord(db.Model):
    """Append-only ledger of payment attempts. Rows are never updated or deleted."""

    __tablename__ = "payment_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.String(255),
        db.ForeignKey("memberships.user_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(20), nullable=False, index=True)
    payment_method = db.Column(db.String(50), nullable=True)
    provider_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    plan_name = db.Column(db.String(100), nullable=False)
    duration_type = db.Column(db.String(20), nullable=False)

    # "metadata" is reserved on declarative models
    meta = db.Column("metadata", db.JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('completed','failed')",
            name="ck_payment_records_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<PaymentRecord id={self.id} user_id={self.user_id!r} status={self.status!r} amount={self.amount}>"
