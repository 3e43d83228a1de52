"""
replyflow/models/usage.py

Usage counter read models.
"""

from datetime import date
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class CounterKind(str, Enum):
    """Independently metered counters on a usage row."""
    MONTHLY_ACTIONS = "actions_used_this_month"
    DAILY_POSTS = "posts_today"


class UsageCounter(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: str
    actions_used_this_month: int = 0
    month_start: date
    posts_today: int = 0
    day_start: date
    queued_count: int = 0


class ConsumeResult(BaseModel):
    """Outcome of one atomic check-and-increment."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    counter: CounterKind
    count: Optional[int] = None  # value after increment, when allowed
    cap: Optional[int] = None


class UsageSnapshot(BaseModel):
    """User-facing usage display."""
    model_config = ConfigDict(frozen=True)

    plan: str
    monthly_used: int
    monthly_limit: Optional[int]
    daily_posted: int
    daily_cap: int
    queued: int
    next_monthly_reset: date
    next_daily_reset: date
