"""
Stripe service.

Thin wrapper over the Stripe SDK for the calls the pipeline makes: webhook
signature verification, subscription lookup and meter event reporting.
"""
from typing import Any, Optional

import stripe

from eventpipe.config import settings


class StripeService:
    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self.stripe = stripe
        stripe.api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        if settings.STRIPE_API_VERSION:
            stripe.api_version = settings.STRIPE_API_VERSION
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET

    def construct_webhook_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify the Stripe-Signature header; raises stripe.error.SignatureVerificationError."""
        return stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Retrieve a subscription as a plain dict."""
        return stripe.Subscription.retrieve(subscription_id).to_dict()

    def create_meter_event(
        self,
        event_name: str,
        stripe_customer_id: str,
        value: int,
        timestamp: int,
    ) -> Any:
        return stripe.billing.MeterEvent.create(
            event_name=event_name,
            payload={
                "stripe_customer_id": stripe_customer_id,
                "value": str(value),
            },
            timestamp=timestamp,
        )

    @staticmethod
    def find_metered_item(subscription: Any) -> Optional[Any]:
        """Return the first subscription item priced with usage_type=metered."""
        items = (subscription.get("items") or {}).get("data") or []
        for item in items:
            recurring = (item.get("price") or {}).get("recurring") or {}
            if recurring.get("usage_type") == "metered":
                return item
        return None


stripe_service = StripeService()
