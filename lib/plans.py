import logging
from typing import Dict, Optional

from pydantic import BaseModel

from lib.models import ActionType, PLAN_FREE, PLAN_PRO, PLAN_PREMIUM

logger = logging.getLogger(__name__)

UNLIMITED = -1


class PlanLimits(BaseModel):
    calls: int
    texts: int
    emails: int

    def for_action(self, action: ActionType) -> int:
        return getattr(self, action.usage_type)

    def remaining(self, action: ActionType, used: int) -> int:
        limit = self.for_action(action)
        if limit == UNLIMITED:
            return UNLIMITED
        return max(0, limit - used)


DEFAULT_PLAN_LIMITS: Dict[str, PlanLimits] = {
    PLAN_FREE: PlanLimits(calls=1, texts=1, emails=1),
    PLAN_PRO: PlanLimits(calls=5, texts=10, emails=UNLIMITED),
    PLAN_PREMIUM: PlanLimits(calls=UNLIMITED, texts=UNLIMITED, emails=UNLIMITED),
}


class PlanCatalog(BaseModel):
    """Static plan data: per-tier entitlements and the Stripe price ids that sell them"""
    limits: Dict[str, PlanLimits] = DEFAULT_PLAN_LIMITS
    # plan id -> {'monthly': price id, 'yearly': price id}
    prices: Dict[str, Dict[str, str]] = {}

    def limits_for(self, tier: Optional[str]) -> PlanLimits:
        if tier in self.limits:
            return self.limits[tier]
        logger.warning(f"Unknown tier {tier!r}, using free limits")
        return self.limits[PLAN_FREE]

    def plan_for_price(self, price_id: Optional[str]) -> str:
        for plan_id, intervals in self.prices.items():
            if price_id in intervals.values():
                return plan_id
        logger.warning(f"No plan mapped for Stripe price {price_id!r}, falling back to free")
        return PLAN_FREE

    def price_for_plan(self, plan_id: str, is_yearly: bool = False) -> Optional[str]:
        intervals = self.prices.get(plan_id.lower())
        if not intervals:
            return None
        return intervals.get('yearly' if is_yearly else 'monthly')
