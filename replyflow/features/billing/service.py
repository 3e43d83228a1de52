"""
Billing webhook orchestrator.

Coordinates:
- Provider selection (Stripe when configured)
- Signature verification and payload normalization
- Hand-off to the subscription state reconciler

All Stripe-specific code is in stripe_provider.py.
"""
import logging
from typing import Optional, Dict

from replyflow.core.config import Settings, billing_enabled, settings
from replyflow.core.errors import ConfigurationError, MalformedEventError
from replyflow.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
)
from replyflow.features.billing.reconciler import ReconcileAck, ReconcileOutcome, reconcile
from replyflow.features.billing.stripe_provider import StripeProvider
from replyflow.models.billing_event import parse_billing_event


logger = logging.getLogger(__name__)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def validate_billing_config(settings_obj: Optional[Settings] = None) -> None:
    """A secret key without a webhook secret would accept unverifiable events."""
    cfg = settings_obj or settings
    if cfg.STRIPE_SECRET_KEY and not cfg.STRIPE_WEBHOOK_SECRET:
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET is required when STRIPE_SECRET_KEY is set")


def process_webhook(headers: Dict[str, str], body: bytes, provider: Optional[BillingProvider] = None) -> ReconcileAck:
    """
    Process one billing webhook delivery.

    1. Verify signature
    2. Normalize and parse into a billing event
    3. Reconcile (idempotent)

    Malformed payloads that carry a valid signature are acknowledged so the
    sender stops redelivering them.

    Raises:
        BillingProviderError: If billing is not enabled
        BillingWebhookError: If the signature is invalid
        SQLAlchemyError: On datastore faults
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingProviderError("Billing not enabled")

    raw = provider.construct_event(headers, body)

    try:
        event = parse_billing_event(provider.normalize_event(raw))
    except MalformedEventError as e:
        logger.error(
            "[billing] malformed webhook event",
            extra={"event_id": raw.get("id"), "event_type": raw.get("type"), "error_message": e.message},
        )
        return ReconcileAck(raw.get("id"), ReconcileOutcome.MALFORMED)

    return reconcile(event)
