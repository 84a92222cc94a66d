from datetime import date, datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel

PLAN_FREE = 'free'
PLAN_PRO = 'pro'
PLAN_PREMIUM = 'premium'

STATUS_ACTIVE = 'active'
STATUS_PAST_DUE = 'past_due'
STATUS_CANCELED = 'canceled'

CHANGE_UPGRADE = 'upgrade'
CHANGE_DOWNGRADE = 'downgrade'
CHANGE_SWITCH = 'switch'
CHANGE_TYPES = (CHANGE_UPGRADE, CHANGE_DOWNGRADE, CHANGE_SWITCH)


class ActionType(str, Enum):
    CALL = 'call'
    TEXT = 'text'
    EMAIL = 'email'

    @property
    def usage_type(self) -> str:
        """Name the increment_usage RPC expects ('calls', 'texts', 'emails')"""
        return f"{self.value}s"

    @property
    def used_field(self) -> str:
        return f"{self.usage_type}_used"


class AuthenticatedUser(BaseModel):
    id: str
    email: Optional[str] = None


class PendingPlanChange(BaseModel):
    target_plan_id: str
    effective_date: date
    change_type: str

    @classmethod
    def from_user_row(cls, row: Dict[str, Any]) -> Optional['PendingPlanChange']:
        if not row.get('pending_plan_id') or not row.get('plan_change_effective_date'):
            return None
        return cls(
            target_plan_id=row['pending_plan_id'],
            effective_date=str(row['plan_change_effective_date'])[:10],
            change_type=row.get('plan_change_type') or CHANGE_DOWNGRADE,
        )


class User(BaseModel):
    id: str
    email: Optional[str] = None
    subscription_tier: str = PLAN_FREE
    subscription_status: Optional[str] = None
    billing_cycle_start: Optional[date] = None
    billing_cycle_end: Optional[date] = None
    billing_interval: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    pending_plan_change: Optional[PendingPlanChange] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'User':
        return cls(
            id=str(row['id']),
            email=row.get('email'),
            subscription_tier=row.get('subscription_tier') or PLAN_FREE,
            subscription_status=row.get('subscription_status'),
            billing_cycle_start=row.get('billing_cycle_start'),
            billing_cycle_end=row.get('billing_cycle_end'),
            billing_interval=row.get('billing_interval'),
            stripe_customer_id=row.get('stripe_customer_id'),
            stripe_subscription_id=row.get('stripe_subscription_id'),
            pending_plan_change=PendingPlanChange.from_user_row(row),
        )


class UsagePeriod(BaseModel):
    calls_used: int = 0
    texts_used: int = 0
    emails_used: int = 0
    tier: str = PLAN_FREE

    def used(self, action: ActionType) -> int:
        return getattr(self, action.used_field)


class UsageDecision(BaseModel):
    action: ActionType
    allowed: bool
    tier: str
    used: int
    limit: int

    @property
    def unlimited(self) -> bool:
        return self.limit == -1


class SubscriptionEvent(BaseModel):
    """Audit row written for every reconciled subscription event"""
    user_id: str
    event_type: str
    from_plan: Optional[str] = None
    to_plan: str
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_event_id: Optional[str] = None
    billing_amount: Optional[int] = None
    currency: Optional[str] = None
    billing_interval: Optional[str] = None
    effective_date: date
    metadata: Dict[str, Any] = {}
    created_at: datetime
