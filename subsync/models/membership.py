from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint
from subsync.extensions import db
from subsync.utils.helpers import utcnow

# Keep simple text+CHECK for evolvable statuses (no DB enum migration pain)
STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_SUSPENDED = "suspended"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
STATUS_CHOICES = (
    STATUS_PENDING,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_SUSPENDED,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
)

DURATION_MONTHLY = "monthly"
DURATION_YEARLY = "yearly"
DURATION_CHOICES = (DURATION_MONTHLY, DURATION_YEARLY)


class Membership(db.Model):
    """Current entitlement state of one user; mutated in place, never deleted."""

    __tablename__ = "memberships"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    plan_id = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(20), nullable=False, index=True, default=STATUS_PENDING)
    duration_type = db.Column(db.String(20), nullable=False, default=DURATION_MONTHLY)

    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False, index=True)
    next_renewal_date = db.Column(db.DateTime, nullable=True)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)

    purchase_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    payment_method = db.Column(db.String(50), nullable=True)

    provider_customer_id = db.Column(db.String(255), nullable=True, index=True)
    provider_subscription_id = db.Column(db.String(255), nullable=True)
    provider_payment_intent_id = db.Column(db.String(255), nullable=True)

    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Optimistic concurrency: every UPDATE carries "WHERE version = :expected"
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','active','past_due','suspended','cancelled','expired')",
            name="ck_memberships_status_valid",
        ),
        CheckConstraint(
            "duration_type IN ('monthly','yearly')",
            name="ck_memberships_duration_type_valid",
        ),
    )

    def effective_status(self, now: Optional[datetime] = None) -> str:
        """
        Status as seen by readers: a cancelled membership whose paid window
        has run out reads as expired. Nothing is written.
        """
        now = now or utcnow()
        if self.status in (STATUS_CANCELLED, STATUS_EXPIRED) and self.end_date and self.end_date <= now:
            return STATUS_EXPIRED
        return self.status

    def __repr__(self) -> str:
        return f"<Membership user_id={self.user_id!r} plan_id={self.plan_id!r} status={self.status!r} v={self.version}>"
