"""
Stripe billing provider implementation.

Implements BillingProvider using the Stripe SDK for signature verification.
Event payloads are read from the verified raw body and flattened into the
billing event shapes the reconciler understands.
"""
import json
from typing import Dict, Any, Optional
import stripe

from replyflow.core.config import settings
from replyflow.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
)


SUBSCRIPTION_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _subscription_period_end(data: Dict[str, Any]) -> Optional[int]:
    # Newer API versions moved current_period_end onto the subscription items
    period_end = data.get("current_period_end")
    if period_end:
        return period_end
    items = (data.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


def _invoice_subscription_id(data: Dict[str, Any]) -> Optional[str]:
    subscription = _object_id(data.get("subscription"))
    if subscription:
        return subscription
    details = ((data.get("parent") or {}).get("subscription_details") or {})
    return _object_id(details.get("subscription"))


def normalize_stripe_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a Stripe event into a billing event dict.

    Missing fields are left out, not defaulted, so parse_billing_event can
    reject malformed events.
    """
    event_type = event.get("type")
    data = (event.get("data") or {}).get("object") or {}

    normalized: Dict[str, Any] = {
        "id": event.get("id"),
        "type": event_type,
        "created": event.get("created"),
    }

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        normalized.update(
            customer_id=_object_id(data.get("customer")),
            subscription_id=data.get("id"),
            status=data.get("status"),
        )
        if event_type != "customer.subscription.deleted":
            normalized["period_end_epoch_seconds"] = _subscription_period_end(data)
    elif event_type == "checkout.session.completed":
        normalized.update(
            customer_id=_object_id(data.get("customer")),
            client_reference_id=data.get("client_reference_id"),
            subscription_id=_object_id(data.get("subscription")),
        )
    elif isinstance(event_type, str) and event_type.startswith("invoice."):
        normalized.update(
            customer_id=_object_id(data.get("customer")),
            subscription_id=_invoice_subscription_id(data),
            attempt_count=data.get("attempt_count"),
        )

    return {k: v for k, v in normalized.items() if v is not None}


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def construct_event(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """Verify Stripe webhook signature and decode the event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        try:
            event = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        if not isinstance(event, dict):
            raise BillingWebhookError("Invalid payload: expected a JSON object")
        return event

    def normalize_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        return normalize_stripe_event(event)
