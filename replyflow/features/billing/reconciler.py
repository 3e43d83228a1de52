"""
Subscription state reconciler.

Applies billing processor events to the subscription record on the
profile. Delivery is at-least-once and unordered, so:

1. Every event passes an idempotency gate (unique processed_events.event_id)
2. Users are resolved by the processor's customer id
3. Stale events are fenced inside the UPDATE's WHERE clause
4. Deletions only apply to the subscription currently on record
5. The record is marked processed with its outcome

A crash between steps 1 and 5 leaves the record unprocessed; redelivery
re-runs steps 2-5, which the fences make safe.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union
from sqlalchemy import select, insert, update, or_
from sqlalchemy.exc import IntegrityError

from replyflow.core.database import get_db_session, processed_events, profiles
from replyflow.features.usage.periods import ensure_utc, normalize_now
from replyflow.features.users.service import attach_customer, get_profile, get_profile_by_customer_id
from replyflow.models.billing_event import (
    BillingEvent,
    CheckoutCompletedEvent,
    InvoiceEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    UnhandledBillingEvent,
    parse_billing_event,
)
from replyflow.models.processed_event import ProcessedEventRecord
from replyflow.models.subscription import SubscriptionStatus, Tier, tier_for_status


logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    SUPERSEDED = "superseded"
    USER_NOT_FOUND = "user_not_found"
    ACKNOWLEDGED = "acknowledged"
    UNHANDLED = "unhandled"
    MALFORMED = "malformed"  # webhook receiver only; never recorded


@dataclass(frozen=True)
class ReconcileAck:
    """What happened to one delivery. Always safe to acknowledge to the sender."""
    event_id: Optional[str]
    outcome: ReconcileOutcome
    user_id: Optional[str] = None


def get_event_record(event_id: str) -> Optional[ProcessedEventRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(processed_events).where(processed_events.c.event_id == event_id)
        ).first()
        if not row:
            return None
        return ProcessedEventRecord(
            event_id=row.event_id,
            event_type=row.event_type,
            payload=row.payload,
            processed=bool(row.processed),
            outcome=row.outcome,
            received_at=ensure_utc(row.received_at),
            processed_at=ensure_utc(row.processed_at),
        )


def record_event(event: BillingEvent, now: Optional[datetime] = None) -> bool:
    """
    Idempotency gate. Returns True when the event should be processed.

    A duplicate id that was already processed returns False. A duplicate
    that never finished processing returns True so it can be re-run.

    Raises:
        IntegrityError: If the insert failed and no record exists (not a duplicate)
    """
    ts = normalize_now(now)
    try:
        with get_db_session() as session:
            session.execute(
                insert(processed_events).values(
                    event_id=event.id,
                    event_type=event.type,
                    payload=event.model_dump(mode="json"),
                    processed=False,
                    received_at=ts,
                )
            )
        return True
    except IntegrityError:
        existing = get_event_record(event.id)
        if existing is None:
            raise
        if existing.processed:
            return False
        logger.warning(
            "[reconciler] resuming unfinished event",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return True


def mark_processed(event_id: str, outcome: ReconcileOutcome, now: Optional[datetime] = None) -> None:
    ts = normalize_now(now)
    with get_db_session() as session:
        session.execute(
            update(processed_events)
            .where(processed_events.c.event_id == event_id)
            .values(processed=True, outcome=ReconcileOutcome(outcome).value, processed_at=ts)
        )


def _apply_subscription_changed(event: SubscriptionChangedEvent, now: datetime) -> ReconcileAck:
    profile = get_profile_by_customer_id(event.customer_id)
    if profile is None:
        return ReconcileAck(event.id, ReconcileOutcome.USER_NOT_FOUND)

    period_end = event.period_end
    created_at = event.created_at
    values: Dict[str, Any] = dict(
        subscription_status=event.status.value,
        tier=tier_for_status(event.status).value,
        external_subscription_id=event.subscription_id,
        updated_at=now,
    )

    stmt = update(profiles).where(profiles.c.user_id == profile.user_id)
    if period_end is not None:
        values["subscribed_until"] = period_end
        stmt = stmt.where(
            or_(profiles.c.subscribed_until.is_(None), profiles.c.subscribed_until <= period_end)
        )
    if created_at is not None:
        values["last_billing_event_at"] = created_at
        stmt = stmt.where(
            or_(profiles.c.last_billing_event_at.is_(None), profiles.c.last_billing_event_at <= created_at)
        )

    with get_db_session() as session:
        result = session.execute(stmt.values(**values))
        applied = (result.rowcount or 0) > 0

    if not applied:
        logger.info(
            "[reconciler] stale event ignored",
            extra={
                "event_id": event.id,
                "user_id": profile.user_id,
                "subscription_id": event.subscription_id,
                "period_end": period_end.isoformat() if period_end else None,
            },
        )
        return ReconcileAck(event.id, ReconcileOutcome.STALE, profile.user_id)

    logger.info(
        "[reconciler] subscription applied",
        extra={
            "event_id": event.id,
            "user_id": profile.user_id,
            "status": event.status.value,
            "tier": tier_for_status(event.status).value,
        },
    )
    return ReconcileAck(event.id, ReconcileOutcome.APPLIED, profile.user_id)


def _apply_subscription_deleted(event: SubscriptionDeletedEvent, now: datetime) -> ReconcileAck:
    profile = get_profile_by_customer_id(event.customer_id)
    if profile is None:
        return ReconcileAck(event.id, ReconcileOutcome.USER_NOT_FOUND)

    values: Dict[str, Any] = dict(
        subscription_status=SubscriptionStatus.CANCELED.value,
        tier=Tier.FREE.value,
        subscribed_until=None,
        updated_at=now,
    )
    if event.created_at is not None:
        values["last_billing_event_at"] = event.created_at

    with get_db_session() as session:
        result = session.execute(
            update(profiles)
            .where(profiles.c.user_id == profile.user_id)
            .where(profiles.c.external_subscription_id == event.subscription_id)
            .values(**values)
        )
        applied = (result.rowcount or 0) > 0

    if not applied:
        # A newer subscription replaced the one being deleted
        logger.info(
            "[reconciler] deletion superseded",
            extra={
                "event_id": event.id,
                "user_id": profile.user_id,
                "subscription_id": event.subscription_id,
                "current_subscription_id": profile.subscription.external_subscription_id,
            },
        )
        return ReconcileAck(event.id, ReconcileOutcome.SUPERSEDED, profile.user_id)

    logger.info(
        "[reconciler] subscription canceled",
        extra={"event_id": event.id, "user_id": profile.user_id, "subscription_id": event.subscription_id},
    )
    return ReconcileAck(event.id, ReconcileOutcome.APPLIED, profile.user_id)


def _apply_checkout_completed(event: CheckoutCompletedEvent, now: datetime) -> ReconcileAck:
    user_id = event.client_reference_id
    if not user_id or get_profile(user_id) is None:
        return ReconcileAck(event.id, ReconcileOutcome.USER_NOT_FOUND)

    try:
        attached = attach_customer(user_id, event.customer_id)
    except IntegrityError:
        # Customer id already belongs to another profile; leave both untouched
        logger.error(
            "[reconciler] customer already linked elsewhere",
            extra={"event_id": event.id, "user_id": user_id, "customer_id": event.customer_id},
        )
        return ReconcileAck(event.id, ReconcileOutcome.ACKNOWLEDGED, user_id)

    if attached:
        logger.info(
            "[reconciler] customer attached",
            extra={"event_id": event.id, "user_id": user_id, "customer_id": event.customer_id},
        )
        return ReconcileAck(event.id, ReconcileOutcome.APPLIED, user_id)
    return ReconcileAck(event.id, ReconcileOutcome.ACKNOWLEDGED, user_id)


def _acknowledge_invoice(event: InvoiceEvent, now: datetime) -> ReconcileAck:
    user_id = None
    if event.customer_id:
        profile = get_profile_by_customer_id(event.customer_id)
        if profile is None:
            return ReconcileAck(event.id, ReconcileOutcome.USER_NOT_FOUND)
        user_id = profile.user_id

    # Tier changes arrive on the subscription events
    level = logging.WARNING if event.type == "invoice.payment_failed" else logging.INFO
    logger.log(
        level,
        "[reconciler] invoice event",
        extra={
            "event_id": event.id,
            "event_type": event.type,
            "user_id": user_id,
            "subscription_id": event.subscription_id,
            "attempt_count": event.attempt_count,
        },
    )
    return ReconcileAck(event.id, ReconcileOutcome.ACKNOWLEDGED, user_id)


def _acknowledge_unhandled(event: UnhandledBillingEvent, now: datetime) -> ReconcileAck:
    logger.warning(
        "[reconciler] unhandled event type",
        extra={"event_id": event.id, "event_type": event.type},
    )
    return ReconcileAck(event.id, ReconcileOutcome.UNHANDLED)


_HANDLERS: Dict[type, Callable[[Any, datetime], ReconcileAck]] = {
    SubscriptionChangedEvent: _apply_subscription_changed,
    SubscriptionDeletedEvent: _apply_subscription_deleted,
    CheckoutCompletedEvent: _apply_checkout_completed,
    InvoiceEvent: _acknowledge_invoice,
    UnhandledBillingEvent: _acknowledge_unhandled,
}


def reconcile(event: Union[BillingEvent, Dict[str, Any]], now: Optional[datetime] = None) -> ReconcileAck:
    """
    Apply one billing event to the subscription record.

    Args:
        event: A parsed BillingEvent, or a normalized event dict
        now: Clock override for bookkeeping timestamps

    Returns:
        ReconcileAck describing the outcome

    Raises:
        MalformedEventError: If a dict event is missing required fields
        SQLAlchemyError: On datastore faults (the sender should redeliver)
    """
    if isinstance(event, dict):
        event = parse_billing_event(event)
    ts = normalize_now(now)

    if not record_event(event, ts):
        logger.info(
            "[reconciler] duplicate event skipped",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return ReconcileAck(event.id, ReconcileOutcome.DUPLICATE)

    ack = _HANDLERS[type(event)](event, ts)

    if ack.outcome == ReconcileOutcome.USER_NOT_FOUND:
        logger.warning(
            "[reconciler] no profile for billing event",
            extra={"event_id": event.id, "event_type": event.type},
        )

    mark_processed(event.id, ack.outcome, ts)
    return ack
