"""
Entitlement and usage API routes.

- POST /api/entitlements/decide: Decide a metered action for the caller
- GET  /api/usage: Current usage snapshot for the caller

Blocked and deferred decisions are 200 responses; the outcome field says
which one applies.
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from replyflow.core.auth import get_current_user_id
from replyflow.core.errors import RateLimitError
from replyflow.core.ratelimit import InMemoryRateLimiter, build_rate_limit_config, rate_limit_key
from replyflow.features.entitlements.service import decide
from replyflow.features.usage.service import get_usage_snapshot
from replyflow.models.decision import ActionKind
from replyflow.models.overflow import PostRequest
from replyflow.models.usage import UsageSnapshot


router = APIRouter(tags=["entitlements"])

# Per-instance courtesy throttle; entitlements are enforced by the datastore
limiter = InMemoryRateLimiter(build_rate_limit_config())


class DecideRequest(BaseModel):
    """Request to decide a metered action."""
    model_config = ConfigDict(extra="forbid")

    action_kind: ActionKind
    intent_to_post_now: bool = False
    post: Optional[PostRequest] = None


@router.post("/entitlements/decide")
def decide_action(body: DecideRequest, user_id: str = Depends(get_current_user_id)):
    """
    Decide whether the caller may perform a metered action.

    Returns:
        {"outcome": "allowed" | "deferred" | "blocked", ...}

    Errors:
        400: Posting requested without a post payload
        401: No authenticated user
        429: Courtesy throttle exceeded
        503: Datastore unavailable
    """
    if not limiter.allow(rate_limit_key(user_id, "entitlements.decide")):
        raise RateLimitError("Too many requests")

    result = decide(
        user_id,
        body.action_kind,
        body.intent_to_post_now,
        post=body.post,
    )
    return result.model_dump(mode="json")


@router.get("/usage", response_model=UsageSnapshot)
def usage_snapshot(user_id: str = Depends(get_current_user_id)):
    """Usage counters, caps and next reset dates for the caller."""
    return get_usage_snapshot(user_id)
