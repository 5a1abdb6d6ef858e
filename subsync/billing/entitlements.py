import logging
from datetime import timedelta
from typing import Dict

from subsync.billing.errors import QuotaExceeded
from subsync.models import UsageLimits
from subsync.models.usage_limits import RESOURCES, UNLIMITED
from subsync.observability import log_event

logger = logging.getLogger(__name__)

# Quota windows are monthly regardless of the billing interval
QUOTA_PERIOD = timedelta(days=30)

# Canonical per-tier monthly caps; -1 means unlimited
TIER_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {"use_cases": 10, "tutorials": 5, "blogs": 3, "api_calls": 100},
    "basic": {"use_cases": 50, "tutorials": 25, "blogs": 15, "api_calls": 1000},
    "pro": {"use_cases": 200, "tutorials": 100, "blogs": 50, "api_calls": 10000},
    "enterprise": {"use_cases": UNLIMITED, "tutorials": UNLIMITED, "blogs": UNLIMITED, "api_calls": UNLIMITED},
}


def resolve_limits(tier: str) -> Dict[str, int]:
    """Caps for a tier; unknown tiers get the free caps."""
    return TIER_LIMITS.get((tier or "").lower(), TIER_LIMITS["free"])


def reset_usage_limits(session, user_id: str, tier: str, now) -> UsageLimits:
    """
    Replace caps with the tier defaults, zero every counter and open a new
    window [now, now + 30d]. A renewal is a full reset, not a top-up.
    """
    limits = resolve_limits(tier)
    usage = session.query(UsageLimits).filter_by(user_id=user_id).with_for_update().one_or_none()
    if usage is None:
        usage = UsageLimits(user_id=user_id, created_at=now)
        session.add(usage)

    for resource in RESOURCES:
        setattr(usage, f"monthly_{resource}", limits[resource])
        setattr(usage, f"used_{resource}", 0)
    usage.current_period_start = now
    usage.current_period_end = now + QUOTA_PERIOD
    usage.updated_at = now
    session.flush()

    log_event(logger, "usage_limits_reset", user_id=user_id, tier=tier, period_end=usage.current_period_end)
    return usage


def remaining(usage: UsageLimits, resource: str):
    """Units left this period, or None when the resource is unlimited."""
    cap = usage.cap(resource)
    if cap == UNLIMITED:
        return None
    return max(cap - usage.used(resource), 0)


def consume(session, user_id: str, resource: str, amount: int = 1) -> UsageLimits:
    """Count `amount` units against the user's quota; the caller commits."""
    if resource not in RESOURCES:
        raise ValueError(f"unknown resource {resource!r}")
    usage = session.query(UsageLimits).filter_by(user_id=user_id).with_for_update().one_or_none()
    if usage is None:
        raise QuotaExceeded(resource, 0, 0)
    left = remaining(usage, resource)
    if left is not None and amount > left:
        raise QuotaExceeded(resource, usage.cap(resource), usage.used(resource))
    setattr(usage, f"used_{resource}", usage.used(resource) + amount)
    session.flush()
    return usage
