"""
replyflow/models/billing_event.py

Billing processor events as a closed tagged union.

Every inbound event is parsed into exactly one of the variants below.
Unknown event types become UnhandledBillingEvent so they are logged and
counted instead of silently falling through.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from replyflow.core.errors import MalformedEventError
from replyflow.models.subscription import SubscriptionStatus


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class _BillingEventBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    type: str
    created: Optional[int] = None  # processor-side creation time, epoch seconds

    @property
    def created_at(self) -> Optional[datetime]:
        return _from_epoch(self.created)


class SubscriptionChangedEvent(_BillingEventBase):
    type: Literal["customer.subscription.created", "customer.subscription.updated"]
    customer_id: str = Field(min_length=1)
    subscription_id: str = Field(min_length=1)
    status: SubscriptionStatus
    period_end_epoch_seconds: Optional[int] = None

    @property
    def period_end(self) -> Optional[datetime]:
        return _from_epoch(self.period_end_epoch_seconds)


class SubscriptionDeletedEvent(_BillingEventBase):
    type: Literal["customer.subscription.deleted"]
    customer_id: str = Field(min_length=1)
    subscription_id: str = Field(min_length=1)
    status: SubscriptionStatus = SubscriptionStatus.CANCELED


class CheckoutCompletedEvent(_BillingEventBase):
    type: Literal["checkout.session.completed"]
    customer_id: str = Field(min_length=1)
    client_reference_id: Optional[str] = None
    subscription_id: Optional[str] = None


class InvoiceEvent(_BillingEventBase):
    type: Literal["invoice.paid", "invoice.payment_failed", "invoice.finalized"]
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    attempt_count: Optional[int] = None


class UnhandledBillingEvent(_BillingEventBase):
    pass


BillingEvent = Union[
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    CheckoutCompletedEvent,
    InvoiceEvent,
    UnhandledBillingEvent,
]

EVENT_TYPES: Dict[str, type] = {
    "customer.subscription.created": SubscriptionChangedEvent,
    "customer.subscription.updated": SubscriptionChangedEvent,
    "customer.subscription.deleted": SubscriptionDeletedEvent,
    "checkout.session.completed": CheckoutCompletedEvent,
    "invoice.paid": InvoiceEvent,
    "invoice.payment_failed": InvoiceEvent,
    "invoice.finalized": InvoiceEvent,
}


def parse_billing_event(raw: Dict[str, Any]) -> BillingEvent:
    """Parse a normalized event dict into its variant.

    Raises MalformedEventError when the id/type are missing or a known
    variant lacks required fields.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("Billing event must be an object")
    event_type = raw.get("type")
    if not event_type or not isinstance(event_type, str):
        raise MalformedEventError("Billing event is missing its type")

    model = EVENT_TYPES.get(event_type, UnhandledBillingEvent)
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise MalformedEventError(f"Malformed {event_type} event: invalid {fields}") from exc
