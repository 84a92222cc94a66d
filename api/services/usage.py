import logging
from typing import Dict, Any

from lib.database import Database
from lib.error_handler import LimitReachedError
from lib.models import ActionType, UsageDecision
from lib.plans import PlanCatalog

logger = logging.getLogger(__name__)

class UsageService:
    """
    Plan entitlements vs. what a user consumed this period.

    The check and the increment are separate round trips, so two requests
    racing for the last unit can both pass the check.
    """

    def __init__(self, database: Database, catalog: PlanCatalog):
        self.db = database
        self.catalog = catalog

    def evaluate(self, user_id: str, action: ActionType) -> UsageDecision:
        usage = self.db.get_current_month_usage(user_id)
        limit = self.catalog.limits_for(usage.tier).for_action(action)
        used = usage.used(action)
        allowed = limit == -1 or used < limit
        logger.info(
            f"Usage check for {user_id}: {action.value} {used}/{limit} "
            f"on {usage.tier} -> {'allow' if allowed else 'deny'}"
        )
        return UsageDecision(action=action, allowed=allowed, tier=usage.tier, used=used, limit=limit)

    def check(self, user_id: str, action: ActionType) -> UsageDecision:
        decision = self.evaluate(user_id, action)
        if not decision.allowed:
            raise LimitReachedError(action.value, decision.used, decision.limit, decision.tier)
        return decision

    def increment(self, user_id: str, action: ActionType) -> None:
        self.db.increment_usage(user_id, action)
        logger.info(f"Incremented {action.usage_type} usage for {user_id}")

    def summary(self, user_id: str) -> Dict[str, Any]:
        """Usage, limits and what's left for the current period"""
        usage = self.db.get_current_month_usage(user_id)
        limits = self.catalog.limits_for(usage.tier)
        return {
            'usage': {
                'calls_used': usage.calls_used,
                'texts_used': usage.texts_used,
                'emails_used': usage.emails_used
            },
            'limits': limits.model_dump(),
            'tier': usage.tier,
            'remaining': {
                action.usage_type: limits.remaining(action, usage.used(action))
                for action in ActionType
            }
        }
