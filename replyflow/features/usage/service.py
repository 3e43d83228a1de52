"""
replyflow/features/usage/service.py

Usage counter store.

Handles:
- Lazy counter creation (default plan on first metered action)
- Period rollover (lazy, per access; plus a bulk sweep for reporting)
- Atomic check-and-consume against a cap

Every counter mutation is a single conditional UPDATE evaluated by the
datastore. There is deliberately no read/compare/write helper here.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Tuple
from sqlalchemy import select, insert, update, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyflow.core.database import get_db_session, usage_counters
from replyflow.core.errors import NotFoundError
from replyflow.features.plans.service import get_default_plan, plan_for_tier
from replyflow.features.usage.periods import (
    current_day,
    month_start_for,
    next_day,
    next_month_start,
    normalize_now,
)
from replyflow.features.users.service import get_profile
from replyflow.models.usage import ConsumeResult, CounterKind, UsageCounter, UsageSnapshot


logger = logging.getLogger(__name__)


def _row_to_counter(row) -> UsageCounter:
    return UsageCounter(
        user_id=row.user_id,
        plan_id=row.plan_id,
        actions_used_this_month=row.actions_used_this_month,
        month_start=row.month_start,
        posts_today=row.posts_today,
        day_start=row.day_start,
        queued_count=row.queued_count,
    )


def _rollover_statements(now: datetime, user_id: Optional[str] = None) -> Tuple[Any, Any]:
    """Build the day and month reset statements for `now`.

    Each only matches rows whose stored period is older than the current
    one, so applying them again is a no-op.
    """
    today = current_day(now)
    first_of_month = month_start_for(today)

    day_reset = (
        update(usage_counters)
        .where(usage_counters.c.day_start < today)
        .values(posts_today=0, day_start=today, updated_at=now)
    )
    month_reset = (
        update(usage_counters)
        .where(usage_counters.c.month_start < first_of_month)
        .values(actions_used_this_month=0, month_start=first_of_month, updated_at=now)
    )
    if user_id is not None:
        day_reset = day_reset.where(usage_counters.c.user_id == user_id)
        month_reset = month_reset.where(usage_counters.c.user_id == user_id)
    return day_reset, month_reset


def _apply_rollover(session: Session, user_id: Optional[str], now: datetime) -> int:
    day_reset, month_reset = _rollover_statements(now, user_id)
    days = session.execute(day_reset).rowcount or 0
    months = session.execute(month_reset).rowcount or 0
    return days + months


def ensure_counter(user_id: str, plan_id: Optional[str] = None, now: Optional[Any] = None) -> None:
    """
    Make sure a usage row exists for the user and is bound to `plan_id`.

    Args:
        user_id: Owner of the counter
        plan_id: Plan whose caps currently apply (defaults to the default plan)
        now: Clock override; new rows start in the periods containing `now`
    """
    ts = normalize_now(now)
    today = current_day(ts)
    plan_id = plan_id or get_default_plan().plan_id

    with get_db_session() as session:
        exists = session.execute(
            select(usage_counters.c.user_id).where(usage_counters.c.user_id == user_id)
        ).first()

    if not exists:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(usage_counters).values(
                        user_id=user_id,
                        plan_id=plan_id,
                        actions_used_this_month=0,
                        month_start=month_start_for(today),
                        posts_today=0,
                        day_start=today,
                        queued_count=0,
                        updated_at=ts,
                    )
                )
            logger.info("[usage] counter created", extra={"user_id": user_id, "plan_id": plan_id})
            return
        except IntegrityError:
            # Lost the race to another worker; fall through to the plan check
            pass

    with get_db_session() as session:
        session.execute(
            update(usage_counters)
            .where(usage_counters.c.user_id == user_id)
            .where(usage_counters.c.plan_id != plan_id)
            .values(plan_id=plan_id, updated_at=ts)
        )


def apply_rollover(user_id: str, now: Optional[Any] = None) -> bool:
    """Reset stale day/month periods for one user. Returns True if anything changed."""
    ts = normalize_now(now)
    with get_db_session() as session:
        changed = _apply_rollover(session, user_id, ts)
    return changed > 0


def try_consume(
    user_id: str,
    counter: CounterKind,
    cap: Optional[int],
    now: Optional[Any] = None,
) -> ConsumeResult:
    """
    Atomically increment `counter` by one if its current value is below `cap`.

    The check and the increment are one UPDATE ... WHERE value < cap, so
    concurrent callers can never push the counter past the cap. cap=None
    means unbounded (the increment still happens, for reporting).

    Raises:
        NotFoundError: If the user has no usage row (call ensure_counter first)
    """
    kind = CounterKind(counter)
    column = usage_counters.c[kind.value]
    ts = normalize_now(now)

    stmt = (
        update(usage_counters)
        .where(usage_counters.c.user_id == user_id)
        .values({kind.value: column + 1, "updated_at": ts})
        .returning(column)
    )
    if cap is not None:
        stmt = stmt.where(column < cap)

    with get_db_session() as session:
        _apply_rollover(session, user_id, ts)
        row = session.execute(stmt).first()

    if row is None:
        if get_counter(user_id, ts) is None:
            raise NotFoundError(f"No usage counter for user {user_id}")
        logger.info(
            "[usage] cap reached",
            extra={"user_id": user_id, "counter": kind.value, "cap": cap},
        )
        return ConsumeResult(allowed=False, counter=kind, cap=cap)

    return ConsumeResult(allowed=True, counter=kind, count=row[0], cap=cap)


def get_counter(user_id: str, now: Optional[Any] = None) -> Optional[UsageCounter]:
    """Read a user's counter after bringing its periods up to date."""
    ts = normalize_now(now)
    with get_db_session() as session:
        _apply_rollover(session, user_id, ts)
        row = session.execute(
            select(usage_counters).where(usage_counters.c.user_id == user_id)
        ).first()
        if not row:
            return None
        return _row_to_counter(row)


def increment_queued(session: Session, user_id: str) -> None:
    session.execute(
        update(usage_counters)
        .where(usage_counters.c.user_id == user_id)
        .values(queued_count=usage_counters.c.queued_count + 1)
    )


def decrement_queued(session: Session, user_id: str) -> None:
    session.execute(
        update(usage_counters)
        .where(usage_counters.c.user_id == user_id)
        .values(
            queued_count=case(
                (usage_counters.c.queued_count > 0, usage_counters.c.queued_count - 1),
                else_=0,
            )
        )
    )


def sweep_rollover(now: Optional[Any] = None) -> int:
    """
    Roll every stale counter forward.

    Only keeps idle counters fresh for reporting; per-access rollover is
    what correctness relies on.

    Returns:
        Number of period resets applied (a row crossing a month counts twice)
    """
    ts = normalize_now(now)
    with get_db_session() as session:
        changed = _apply_rollover(session, None, ts)
    logger.info("[usage] rollover sweep", extra={"resets": changed, "as_of": ts.isoformat()})
    return changed


def get_usage_snapshot(user_id: str, now: Optional[Any] = None) -> UsageSnapshot:
    """
    Usage numbers for display.

    Raises:
        NotFoundError: If the user has no profile
    """
    ts = normalize_now(now)
    profile = get_profile(user_id)
    if profile is None:
        raise NotFoundError(f"User {user_id} not found")

    plan = plan_for_tier(profile.tier)
    ensure_counter(user_id, plan.plan_id, ts)
    counter = get_counter(user_id, ts)

    return UsageSnapshot(
        plan=plan.plan_id,
        monthly_used=counter.actions_used_this_month,
        monthly_limit=plan.monthly_action_limit,
        daily_posted=counter.posts_today,
        daily_cap=plan.daily_post_cap,
        queued=counter.queued_count,
        next_monthly_reset=next_month_start(counter.month_start),
        next_daily_reset=next_day(counter.day_start),
    )
