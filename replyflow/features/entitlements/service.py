"""
replyflow/features/entitlements/service.py

Entitlement decision service.

Handles:
- Plan resolution from the subscriber's tier
- Monthly action metering (checked first) and the daily posting cap
- Deferral into the overflow queue when only the daily cap is exhausted
- Structured logs for every decision

Rejections and deferrals are returned values. Exceptions are reserved for
caller bugs and infrastructure faults.
"""

import logging
from typing import Any, Optional

from replyflow.core.config import settings
from replyflow.core.database import get_db_session
from replyflow.core.errors import UnknownPlanError, ValidationError
from replyflow.features.overflow.service import enqueue
from replyflow.features.plans.service import plan_for_tier, upgrade_plan_for
from replyflow.features.usage.periods import normalize_now
from replyflow.features.usage.service import ensure_counter, try_consume
from replyflow.features.users.service import get_profile
from replyflow.models.decision import (
    ActionKind,
    Allowed,
    AllowedButDeferred,
    Blocked,
    DecisionResult,
)
from replyflow.models.overflow import PostRequest
from replyflow.models.usage import CounterKind


logger = logging.getLogger(__name__)


def _blocked(result: Blocked, user_id: str, action_kind: ActionKind, level: int = logging.INFO) -> Blocked:
    logger.log(
        level,
        "[entitlements] BLOCKED",
        extra={
            "user_id": user_id,
            "action_kind": action_kind.value,
            "plan_id": result.plan_id,
            "error_code": result.code,
            "limit": result.limit,
        },
    )
    return result


def decide(
    user_id: str,
    action_kind: ActionKind,
    intent_to_post_now: bool,
    now: Optional[Any] = None,
    *,
    post: Optional[PostRequest] = None,
) -> DecisionResult:
    """
    Decide whether a metered action may proceed.

    Args:
        user_id: Subscriber performing the action
        action_kind: GENERATE_REPLY consumes a monthly action; POST_REPLY does not
        intent_to_post_now: Whether the caller wants to publish immediately
        now: Clock override (UTC assumed for naive datetimes)
        post: What to publish; required when intent_to_post_now is set

    Returns:
        Allowed, AllowedButDeferred (queued for the next daily window) or Blocked

    Raises:
        ValidationError: If posting is requested without a PostRequest
    """
    kind = ActionKind(action_kind)
    ts = normalize_now(now)

    if intent_to_post_now and post is None:
        raise ValidationError("A post request is required when posting now")

    profile = get_profile(user_id)
    if profile is None:
        return _blocked(
            Blocked(code="user_not_found", reason="user not found"),
            user_id,
            kind,
        )

    try:
        plan = plan_for_tier(profile.tier)
    except UnknownPlanError as exc:
        return _blocked(
            Blocked(code="unknown_plan", reason="plan not configured", plan_id=exc.plan_id),
            user_id,
            kind,
            level=logging.ERROR,
        )

    ensure_counter(user_id, plan.plan_id, ts)

    monthly_used = None
    if kind.consumes_monthly:
        monthly = try_consume(user_id, CounterKind.MONTHLY_ACTIONS, plan.monthly_action_limit, ts)
        if not monthly.allowed:
            return _blocked(
                Blocked(
                    code="monthly_limit_reached",
                    reason="monthly limit reached",
                    plan_id=plan.plan_id,
                    cap="monthly",
                    limit=plan.monthly_action_limit,
                    upgrade_plan=upgrade_plan_for(plan.plan_id),
                    upgrade_url=settings.PRICING_URL,
                ),
                user_id,
                kind,
            )
        monthly_used = monthly.count

    if not intent_to_post_now:
        logger.info(
            "[entitlements] ALLOWED",
            extra={"user_id": user_id, "action_kind": kind.value, "plan_id": plan.plan_id, "monthly_used": monthly_used},
        )
        return Allowed(plan_id=plan.plan_id, monthly_used=monthly_used)

    daily = try_consume(user_id, CounterKind.DAILY_POSTS, plan.daily_post_cap, ts)
    if daily.allowed:
        logger.info(
            "[entitlements] ALLOWED",
            extra={
                "user_id": user_id,
                "action_kind": kind.value,
                "plan_id": plan.plan_id,
                "monthly_used": monthly_used,
                "posts_today": daily.count,
            },
        )
        return Allowed(plan_id=plan.plan_id, monthly_used=monthly_used, posts_today=daily.count)

    # Daily cap reached; the monthly consume above stays spent
    with get_db_session() as session:
        item_id = enqueue(session, user_id, post, ts)

    logger.info(
        "[entitlements] DEFERRED",
        extra={
            "user_id": user_id,
            "action_kind": kind.value,
            "plan_id": plan.plan_id,
            "cap": plan.daily_post_cap,
            "queue_item_id": item_id,
        },
    )
    return AllowedButDeferred(plan_id=plan.plan_id, cap=plan.daily_post_cap, queue_item_id=item_id)
