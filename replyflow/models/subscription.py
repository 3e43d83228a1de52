"""
replyflow/models/subscription.py

Subscription state as stored on the user profile.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Payment processor lifecycle states, plus NONE for never-subscribed."""
    NONE = "none"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


# past_due keeps paid features while the processor retries the payment
PAID_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})


def tier_for_status(status: SubscriptionStatus) -> Tier:
    """Derive the tier from the subscription status.

    trialing maps to free until product confirms otherwise.
    """
    return Tier.PRO if SubscriptionStatus(status) in PAID_STATUSES else Tier.FREE


class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscribed_until: Optional[datetime] = None
    external_subscription_id: Optional[str] = None


class Profile(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    external_customer_id: Optional[str] = None
    last_billing_event_at: Optional[datetime] = None
    subscription: SubscriptionRecord = SubscriptionRecord()
    created_at: Optional[datetime] = None

    @property
    def tier(self) -> Tier:
        return self.subscription.tier
