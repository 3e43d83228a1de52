"""Calendar period helpers for usage counters. All periods are UTC calendar days/months."""

from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if getattr(now, "tzinfo", None) is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the datastore."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def current_day(now: Optional[Any] = None) -> date:
    return normalize_now(now).date()


def month_start_for(day: date) -> date:
    return day.replace(day=1)


def next_day(day: date) -> date:
    return day + timedelta(days=1)


def next_month_start(day: date) -> date:
    first = month_start_for(day)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)
