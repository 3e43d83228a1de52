"""
Usage counter store tests.

Covers lazy creation, atomic check-and-consume, rollover idempotence and
independence, and the usage snapshot.
"""
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from sqlalchemy import select

from replyflow.core.database import get_db_session, usage_counters
from replyflow.core.errors import NotFoundError
from replyflow.features.usage.service import (
    apply_rollover,
    decrement_queued,
    ensure_counter,
    get_counter,
    get_usage_snapshot,
    increment_queued,
    sweep_rollover,
    try_consume,
)
from replyflow.models.usage import CounterKind


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def test_ensure_counter_creates_zeroed_row_for_current_periods():
    ensure_counter("user_alice", now=NOW)

    counter = get_counter("user_alice", NOW)
    assert counter.plan_id == "free"
    assert counter.actions_used_this_month == 0
    assert counter.posts_today == 0
    assert counter.queued_count == 0
    assert counter.day_start == date(2026, 3, 15)
    assert counter.month_start == date(2026, 3, 1)


def test_ensure_counter_is_idempotent_and_rebinds_plan():
    ensure_counter("user_alice", "free", NOW)
    try_consume("user_alice", CounterKind.MONTHLY_ACTIONS, 50, NOW)

    ensure_counter("user_alice", "free", NOW)
    assert get_counter("user_alice", NOW).actions_used_this_month == 1

    ensure_counter("user_alice", "pro", NOW)
    counter = get_counter("user_alice", NOW)
    assert counter.plan_id == "pro"
    # Rebinding the plan is not a counter write
    assert counter.actions_used_this_month == 1

    with get_db_session() as session:
        rows = session.execute(
            select(usage_counters).where(usage_counters.c.user_id == "user_alice")
        ).fetchall()
    assert len(rows) == 1


def test_try_consume_stops_at_cap(set_counter):
    ensure_counter("user_alice", now=NOW)
    set_counter("user_alice", posts_today=24)

    first = try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)
    assert first.allowed is True
    assert first.count == 25

    second = try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)
    assert second.allowed is False
    assert second.count is None
    assert second.cap == 25
    assert get_counter("user_alice", NOW).posts_today == 25


def test_try_consume_without_cap_still_counts():
    ensure_counter("user_alice", "pro", NOW)

    for expected in range(1, 4):
        result = try_consume("user_alice", CounterKind.MONTHLY_ACTIONS, None, NOW)
        assert result.allowed is True
        assert result.count == expected


def test_counters_are_consumed_independently():
    ensure_counter("user_alice", now=NOW)

    try_consume("user_alice", CounterKind.MONTHLY_ACTIONS, 50, NOW)
    try_consume("user_alice", CounterKind.MONTHLY_ACTIONS, 50, NOW)
    try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)

    counter = get_counter("user_alice", NOW)
    assert counter.actions_used_this_month == 2
    assert counter.posts_today == 1


def test_try_consume_without_counter_raises_not_found():
    with pytest.raises(NotFoundError):
        try_consume("ghost", CounterKind.MONTHLY_ACTIONS, 50, NOW)


def test_concurrent_consumes_never_overshoot(set_counter):
    """40/50 used, 30 racing requests: exactly 10 win and the counter ends at 50."""
    ensure_counter("user_alice", now=NOW)
    set_counter("user_alice", actions_used_this_month=40)

    def consume(_):
        return try_consume("user_alice", CounterKind.MONTHLY_ACTIONS, 50, NOW)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(consume, range(30)))

    allowed = [r for r in results if r.allowed]
    assert len(allowed) == 10
    assert sorted(r.count for r in allowed) == list(range(41, 51))
    assert get_counter("user_alice", NOW).actions_used_this_month == 50


def test_rollover_is_idempotent(set_counter):
    ensure_counter("user_alice", now=NOW)
    set_counter("user_alice", posts_today=12, day_start=date(2026, 3, 14))

    assert apply_rollover("user_alice", NOW) is True
    try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)

    # Second application with the same clock matches nothing
    assert apply_rollover("user_alice", NOW) is False
    counter = get_counter("user_alice", NOW)
    assert counter.posts_today == 1
    assert counter.day_start == date(2026, 3, 15)


def test_rollover_never_moves_periods_backwards():
    ensure_counter("user_alice", now=NOW)
    try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)

    earlier = NOW - timedelta(days=40)
    assert apply_rollover("user_alice", earlier) is False

    counter = get_counter("user_alice", NOW)
    assert counter.day_start == date(2026, 3, 15)
    assert counter.month_start == date(2026, 3, 1)
    assert counter.posts_today == 1


def test_day_rollover_leaves_monthly_counter_alone(set_counter):
    ensure_counter("user_alice", now=NOW)
    set_counter("user_alice", actions_used_this_month=30, posts_today=20)

    next_day = NOW + timedelta(days=1)
    counter = get_counter("user_alice", next_day)

    assert counter.posts_today == 0
    assert counter.day_start == date(2026, 3, 16)
    assert counter.actions_used_this_month == 30
    assert counter.month_start == date(2026, 3, 1)


def test_month_rollover_resets_monthly_counter(set_counter):
    ensure_counter("user_alice", now=NOW)
    set_counter("user_alice", actions_used_this_month=50, posts_today=3)

    counter = get_counter("user_alice", datetime(2026, 4, 1, 0, 5, tzinfo=timezone.utc))

    assert counter.actions_used_this_month == 0
    assert counter.month_start == date(2026, 4, 1)
    assert counter.posts_today == 0
    assert counter.day_start == date(2026, 4, 1)


def test_rollover_uses_utc_calendar_days():
    """23:30 at UTC-5 is already the next UTC day."""
    ensure_counter("user_alice", now=NOW)
    try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)

    local = datetime(2026, 3, 15, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    counter = get_counter("user_alice", local)

    assert counter.day_start == date(2026, 3, 16)
    assert counter.posts_today == 0


def test_sweep_rollover_resets_idle_counters(set_counter):
    ensure_counter("user_alice", now=NOW)
    ensure_counter("user_bob", now=NOW)
    set_counter("user_alice", posts_today=5)
    set_counter("user_bob", posts_today=7, actions_used_this_month=9)

    # Day rollover for both, month rollover for both
    resets = sweep_rollover(datetime(2026, 4, 2, 3, 0, tzinfo=timezone.utc))
    assert resets == 4

    with get_db_session() as session:
        rows = session.execute(select(usage_counters)).fetchall()
    assert all(r.posts_today == 0 and r.actions_used_this_month == 0 for r in rows)

    assert sweep_rollover(datetime(2026, 4, 2, 3, 0, tzinfo=timezone.utc)) == 0


def test_queued_count_floors_at_zero():
    ensure_counter("user_alice", now=NOW)

    with get_db_session() as session:
        increment_queued(session, "user_alice")
        increment_queued(session, "user_alice")
    assert get_counter("user_alice", NOW).queued_count == 2

    with get_db_session() as session:
        for _ in range(3):
            decrement_queued(session, "user_alice")
    assert get_counter("user_alice", NOW).queued_count == 0


def test_usage_snapshot_reports_plan_caps_and_resets(make_profile):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    try_consume("user_alice", CounterKind.MONTHLY_ACTIONS, 50, NOW)
    try_consume("user_alice", CounterKind.DAILY_POSTS, 25, NOW)

    snapshot = get_usage_snapshot("user_alice", NOW)

    assert snapshot.plan == "free"
    assert snapshot.monthly_used == 1
    assert snapshot.monthly_limit == 50
    assert snapshot.daily_posted == 1
    assert snapshot.daily_cap == 25
    assert snapshot.queued == 0
    assert snapshot.next_monthly_reset == date(2026, 4, 1)
    assert snapshot.next_daily_reset == date(2026, 3, 16)


def test_usage_snapshot_for_pro_has_no_monthly_limit(make_profile):
    make_profile("user_pro", customer_id="cus_pro", tier="pro", status="active")

    snapshot = get_usage_snapshot("user_pro", datetime(2026, 12, 31, 9, 0, tzinfo=timezone.utc))

    assert snapshot.plan == "pro"
    assert snapshot.monthly_limit is None
    assert snapshot.daily_cap == 100
    assert snapshot.next_monthly_reset == date(2027, 1, 1)


def test_usage_snapshot_unknown_user_raises():
    with pytest.raises(NotFoundError):
        get_usage_snapshot("ghost", NOW)
