"""
Billing provider protocol.

Defines the interface the webhook receiver needs from a payment processor.
This allows swapping providers without changing reconciliation logic.
"""
from typing import Protocol, Dict, Any


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification
    - Normalizing processor payloads into billing event dicts
    """

    def construct_event(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify the webhook signature and decode the event.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw webhook body, byte-for-byte as received

        Returns:
            The processor's event as a plain dict

        Raises:
            BillingWebhookError: If the signature or payload is invalid
        """
        ...

    def normalize_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Flatten a processor event into the shape parse_billing_event expects.

        Returns:
            Dict with id, type, created and the variant's fields
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Webhook could not be authenticated or decoded."""
    pass
