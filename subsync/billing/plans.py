from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol

from subsync.models.membership import DURATION_MONTHLY, DURATION_YEARLY

DURATION_DAYS = {
    DURATION_MONTHLY: 30,
    DURATION_YEARLY: 365,
}


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    tier: str
    default_duration: str = DURATION_MONTHLY

    def duration_days(self, duration_type: Optional[str] = None) -> int:
        return DURATION_DAYS.get(duration_type or self.default_duration, DURATION_DAYS[DURATION_MONTHLY])


class PlanCatalog(Protocol):
    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...


def infer_tier(plan_name: str) -> str:
    """Tier for plans configured without one, keyed off the display name."""
    name = (plan_name or "").lower()
    if "pro" in name:
        return "pro"
    if "enterprise" in name:
        return "enterprise"
    if "basic" in name:
        return "basic"
    return "free"


class ConfigPlanCatalog:
    """
    Read-only catalog built from the MEMBERSHIP_PLANS config mapping:
        {"pro": {"name": "Pro", "tier": "pro", "default_duration": "monthly"}, ...}
    """

    def __init__(self, plans: Mapping[str, Mapping]):
        self._plans: Dict[str, Plan] = {}
        for plan_id, spec in (plans or {}).items():
            name = spec.get("name") or plan_id
            duration = spec.get("default_duration") or DURATION_MONTHLY
            if duration not in DURATION_DAYS:
                raise ValueError(f"plan {plan_id!r}: unknown default_duration {duration!r}")
            self._plans[str(plan_id)] = Plan(
                id=str(plan_id),
                name=name,
                tier=spec.get("tier") or infer_tier(name),
                default_duration=duration,
            )

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def __len__(self) -> int:
        return len(self._plans)
