import json
import logging
from typing import Any, Dict, Optional

import stripe

from lib.config import Settings
from lib.error_handler import UpstreamError

logger = logging.getLogger(__name__)

class StripeClient:
    def __init__(self, settings: Settings):
        self.api_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

    def verify_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the Stripe-Signature header against the webhook secret and
        return the decoded event. Raises stripe.SignatureVerificationError
        or ValueError when the payload can't be trusted.
        """
        if not self.webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET is not set")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        body = payload.decode('utf-8') if isinstance(payload, bytes) else payload
        stripe.WebhookSignature.verify_header(
            body, signature, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
        return json.loads(body)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Failed to fetch subscription {subscription_id}: {e}")
            raise UpstreamError(f"Stripe error fetching subscription: {e}")
        return subscription.to_dict()

    def schedule_cancellation(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to schedule cancellation for {subscription_id}: {e}")
            raise UpstreamError(f"Stripe error: {e}", "Failed to schedule downgrade")

    def change_price(self, subscription_id: str, price_id: str) -> None:
        """Swap the subscription's item to a new price, prorating the difference"""
        subscription = self.retrieve_subscription(subscription_id)
        items = (subscription.get('items') or {}).get('data') or []
        if not items:
            raise UpstreamError(f"Subscription {subscription_id} has no items", "Failed to update subscription")

        try:
            stripe.Subscription.modify(
                subscription_id,
                items=[{'id': items[0]['id'], 'price': price_id}],
                proration_behavior='create_prorations',
                cancel_at_period_end=False,
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to update subscription {subscription_id}: {e}")
            raise UpstreamError(f"Stripe error: {e}", "Failed to update subscription")
