import logging
import asyncio
from datetime import datetime, timezone, date
from typing import Dict, Any, Optional, Tuple

from lib.database import Database
from lib.error_handler import NotFoundError, ValidationError, require_text
from lib.models import (
    AuthenticatedUser, SubscriptionEvent, User,
    PLAN_FREE, STATUS_CANCELED, STATUS_PAST_DUE,
    CHANGE_DOWNGRADE, CHANGE_TYPES
)
from lib.plans import PlanCatalog
from lib.stripe_client import StripeClient

logger = logging.getLogger(__name__)

REACTIVATED_NOTE = 'Cancelled - subscription reactivated before effective date'
SCHEDULED_NOTE = 'Scheduled via Stripe cancel_at_period_end'
RESCHEDULED_NOTE = 'Superseded by a later scheduled change'

CLEARED_PENDING_CHANGE = {
    'pending_plan_id': None,
    'plan_change_effective_date': None,
    'plan_change_type': None,
    'plan_change_requested_at': None,
}

def to_date(timestamp: Optional[int]) -> Optional[date]:
    """Stripe epoch seconds -> UTC calendar date"""
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).date()

def first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get('items') or {}).get('data') or []
    return items[0] if items else {}

def billing_window(subscription: Dict[str, Any]) -> Tuple[Optional[date], Optional[date]]:
    """Trial window if present, else the item period, else the subscription period"""
    item = first_item(subscription)
    start = (
        subscription.get('trial_start')
        or item.get('current_period_start')
        or subscription.get('current_period_start')
    )
    end = (
        subscription.get('trial_end')
        or item.get('current_period_end')
        or subscription.get('current_period_end')
    )
    return to_date(start), to_date(end)

def period_end(subscription: Dict[str, Any]) -> Optional[date]:
    item = first_item(subscription)
    return to_date(item.get('current_period_end') or subscription.get('current_period_end'))

def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    """Newer API versions move the subscription under parent.subscription_details"""
    if invoice.get('subscription'):
        return invoice['subscription']
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return details.get('subscription')

class SubscriptionReconciler:
    """Applies Stripe subscription lifecycle events to our users and billing tables"""

    def __init__(self, database: Database, stripe_client: StripeClient, catalog: PlanCatalog):
        self.db = database
        self.stripe = stripe_client
        self.catalog = catalog

        self.handlers = {
            'customer.subscription.created': self._handle_subscription_created,
            'customer.subscription.updated': self._handle_subscription_updated,
            'customer.subscription.deleted': self._handle_subscription_deleted,
            'invoice.payment_succeeded': self._handle_payment_succeeded,
            'invoice.payment_failed': self._handle_payment_failed,
        }

    async def process_event(self, event: Dict[str, Any]) -> bool:
        """Dispatch a verified Stripe event. Returns False for types we ignore."""
        event_type = event.get('type')
        handler = self.handlers.get(event_type)
        if not handler:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            return False

        logger.info(f"Processing Stripe event {event.get('id')}: {event_type}")
        await handler(event)
        return True

    # Event handlers

    async def _handle_subscription_created(self, event: Dict[str, Any]) -> None:
        self._apply_subscription(event, event['data']['object'], 'created')

    async def _handle_subscription_updated(self, event: Dict[str, Any]) -> None:
        self._apply_subscription(event, event['data']['object'], 'updated')

    async def _handle_subscription_deleted(self, event: Dict[str, Any]) -> None:
        subscription = event['data']['object']
        user = self._find_user(subscription.get('customer'))
        if not user:
            return

        self.db.update_user(user.id, {
            'subscription_tier': PLAN_FREE,
            'subscription_status': STATUS_CANCELED,
            'billing_cycle_start': None,
            'billing_cycle_end': None,
            **CLEARED_PENDING_CHANGE
        })
        self.db.update_subscriptions(
            {'status': STATUS_CANCELED, 'tier': PLAN_FREE},
            stripe_subscription_id=subscription['id']
        )
        self._record_event(user, event, subscription, 'canceled', PLAN_FREE)
        logger.info(f"Subscription {subscription['id']} deleted, user {user.id} moved to free")

    async def _handle_payment_succeeded(self, event: Dict[str, Any]) -> None:
        invoice = event['data']['object']
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} has no subscription, nothing to sync")
            return

        loop = asyncio.get_running_loop()
        subscription = await loop.run_in_executor(
            None,
            lambda: self.stripe.retrieve_subscription(subscription_id)
        )
        self._apply_subscription(event, subscription, 'updated')

    async def _handle_payment_failed(self, event: Dict[str, Any]) -> None:
        invoice = event['data']['object']
        user = self._find_user(invoice.get('customer'))
        if not user:
            return

        self.db.update_user(user.id, {'subscription_status': STATUS_PAST_DUE})
        self.db.update_subscriptions({'status': STATUS_PAST_DUE}, user_id=user.id)
        logger.info(f"Payment failed for invoice {invoice.get('id')}, user {user.id} is past due")

    # Helpers

    def _find_user(self, customer_id: Optional[str]) -> Optional[User]:
        if not customer_id:
            logger.warning("Stripe object carries no customer id")
            return None
        user = self.db.get_user_by_customer_id(customer_id)
        if not user:
            logger.warning(f"No user found for Stripe customer {customer_id}")
        return user

    def _apply_subscription(self, event: Dict[str, Any], subscription: Dict[str, Any], audit_type: str) -> None:
        """Write tier, status and billing window from a subscription snapshot"""
        user = self._find_user(subscription.get('customer'))
        if not user:
            return

        price = first_item(subscription).get('price') or {}
        plan_id = self.catalog.plan_for_price(price.get('id'))
        start, end = billing_window(subscription)

        self._sync_pending_downgrade(user, subscription, plan_id)

        fields = {
            'subscription_tier': plan_id,
            'subscription_status': subscription.get('status'),
            'stripe_subscription_id': subscription['id'],
        }
        interval = (price.get('recurring') or {}).get('interval')
        if interval:
            fields['billing_interval'] = interval
        if start and end:
            fields['billing_cycle_start'] = start.isoformat()
            fields['billing_cycle_end'] = end.isoformat()
        else:
            logger.error(f"Subscription {subscription['id']} has no usable billing period")
        self.db.update_user(user.id, fields)

        row = {
            'user_id': user.id,
            'stripe_subscription_id': subscription['id'],
            'tier': plan_id,
            'status': subscription.get('status'),
        }
        if start and end:
            row['current_period_start'] = start.isoformat()
            row['current_period_end'] = end.isoformat()
        self.db.upsert_subscription(row)

        self._record_event(user, event, subscription, audit_type, plan_id)
        logger.info(f"User {user.id}: {user.subscription_tier} -> {plan_id} ({subscription.get('status')})")

    def _sync_pending_downgrade(self, user: User, subscription: Dict[str, Any], plan_id: str) -> None:
        """cancel_at_period_end schedules a move to free; clearing it cancels the move"""
        pending = user.pending_plan_change
        if subscription.get('cancel_at_period_end'):
            effective = period_end(subscription)
            if not effective:
                logger.error(f"Cannot schedule downgrade for {subscription['id']}: no period end")
                return
            if pending and pending.change_type == CHANGE_DOWNGRADE and pending.effective_date == effective:
                return

            self.db.cancel_pending_plan_changes(user.id, RESCHEDULED_NOTE)
            self.db.update_user(user.id, {
                'pending_plan_id': PLAN_FREE,
                'plan_change_effective_date': effective.isoformat(),
                'plan_change_type': CHANGE_DOWNGRADE,
                'plan_change_requested_at': datetime.now(timezone.utc).isoformat(),
            })
            self.db.insert_plan_change({
                'user_id': user.id,
                'from_plan_id': plan_id,
                'to_plan_id': PLAN_FREE,
                'change_type': CHANGE_DOWNGRADE,
                'effective_date': effective.isoformat(),
                'status': 'pending',
                'stripe_subscription_id': subscription['id'],
                'notes': SCHEDULED_NOTE
            })
            logger.info(f"Pending downgrade for {user.id}: {plan_id} -> free on {effective}")
        elif pending and pending.change_type == CHANGE_DOWNGRADE:
            self.db.update_user(user.id, dict(CLEARED_PENDING_CHANGE))
            self.db.cancel_pending_plan_changes(user.id, REACTIVATED_NOTE)
            logger.info(f"Subscription {subscription['id']} reactivated, cleared pending downgrade for {user.id}")

    def _record_event(
        self,
        user: User,
        event: Dict[str, Any],
        subscription: Dict[str, Any],
        event_type: str,
        to_plan: str
    ) -> None:
        price = first_item(subscription).get('price') or {}
        now = datetime.now(timezone.utc)
        audit = SubscriptionEvent(
            user_id=user.id,
            event_type=event_type,
            from_plan=user.subscription_tier,
            to_plan=to_plan,
            stripe_subscription_id=subscription.get('id'),
            stripe_customer_id=subscription.get('customer'),
            stripe_event_id=event.get('id'),
            billing_amount=price.get('unit_amount'),
            currency=price.get('currency'),
            billing_interval=(price.get('recurring') or {}).get('interval'),
            effective_date=now.date(),
            metadata=event,
            created_at=now
        )
        self.db.insert_subscription_event(audit.model_dump(mode='json'))

class SubscriptionService:
    """User-facing plan status and plan change requests"""

    def __init__(self, database: Database, stripe_client: StripeClient, catalog: PlanCatalog):
        self.db = database
        self.stripe = stripe_client
        self.catalog = catalog

    def get_status(self, user_id: str) -> Dict[str, Any]:
        user = self.db.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")

        pending = user.pending_plan_change
        return {
            'subscription_plan_id': user.subscription_tier,
            'subscription_status': user.subscription_status,
            'billing_cycle_start': user.billing_cycle_start.isoformat() if user.billing_cycle_start else None,
            'billing_cycle_end': user.billing_cycle_end.isoformat() if user.billing_cycle_end else None,
            'billing_interval': user.billing_interval,
            'stripe_customer_id': user.stripe_customer_id,
            'pending_plan_change': pending.model_dump(mode='json') if pending else None
        }

    async def request_plan_change(
        self,
        user: AuthenticatedUser,
        plan_id: Optional[str],
        is_yearly: bool,
        change_type: Optional[str]
    ) -> Dict[str, Any]:
        require_text("Missing required fields: planId, changeType", planId=plan_id, changeType=change_type)
        if change_type not in CHANGE_TYPES:
            raise ValidationError(f"Invalid changeType: {change_type}")

        logger.info(f"Processing {change_type} for user {user.id}: {plan_id} ({'yearly' if is_yearly else 'monthly'})")

        record = self.db.get_user(user.id)
        if not record or not record.stripe_customer_id:
            raise NotFoundError("No Stripe customer found for this user")

        subscription_id = record.stripe_subscription_id
        loop = asyncio.get_running_loop()

        if change_type == CHANGE_DOWNGRADE:
            if subscription_id:
                await loop.run_in_executor(None, lambda: self.stripe.schedule_cancellation(subscription_id))
                logger.info(f"Scheduled downgrade for user {user.id}")
            return {'success': True}

        price_id = self.catalog.price_for_plan(plan_id, is_yearly)
        if not price_id:
            raise ValidationError("Invalid plan type")

        if subscription_id:
            await loop.run_in_executor(None, lambda: self.stripe.change_price(subscription_id, price_id))
            logger.info(f"Updated subscription for user {user.id} to {plan_id}")
        return {'success': True}
