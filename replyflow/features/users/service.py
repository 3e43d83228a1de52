"""
User profile service.
- create_profile(user_id, email)
- get_profile(user_id)
- get_profile_by_customer_id(customer_id)
- attach_customer(user_id, customer_id)
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from replyflow.core.database import get_db_session, profiles
from replyflow.features.usage.periods import ensure_utc
from replyflow.models.subscription import Profile, SubscriptionRecord, SubscriptionStatus, Tier


def _row_to_profile(row) -> Profile:
    return Profile(
        user_id=row.user_id,
        email=row.email,
        external_customer_id=row.external_customer_id,
        last_billing_event_at=ensure_utc(row.last_billing_event_at),
        created_at=ensure_utc(row.created_at),
        subscription=SubscriptionRecord(
            tier=Tier(row.tier),
            subscription_status=SubscriptionStatus(row.subscription_status),
            subscribed_until=ensure_utc(row.subscribed_until),
            external_subscription_id=row.external_subscription_id,
        ),
    )


def get_profile(user_id: str) -> Optional[Profile]:
    with get_db_session() as session:
        row = session.execute(select(profiles).where(profiles.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_profile(row)


def get_profile_by_customer_id(customer_id: str) -> Optional[Profile]:
    with get_db_session() as session:
        row = session.execute(
            select(profiles).where(profiles.c.external_customer_id == customer_id)
        ).first()
        if not row:
            return None
        return _row_to_profile(row)


def create_profile(user_id: str, email: Optional[str] = None) -> Profile:
    """Create a free-tier profile (idempotent: returns the existing one)."""
    existing = get_profile(user_id)
    if existing:
        return existing

    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            session.execute(
                insert(profiles).values(
                    user_id=user_id,
                    email=email,
                    tier=Tier.FREE.value,
                    subscription_status=SubscriptionStatus.NONE.value,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Created concurrently by another worker
        pass

    return get_profile(user_id)


def attach_customer(user_id: str, customer_id: str) -> bool:
    """Link a billing customer to a profile that has none yet.

    Returns True when the link was written, False when the profile already
    had a customer id or does not exist.
    """
    with get_db_session() as session:
        result = session.execute(
            update(profiles)
            .where(profiles.c.user_id == user_id)
            .where(profiles.c.external_customer_id.is_(None))
            .values(external_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
        )
        return (result.rowcount or 0) > 0
