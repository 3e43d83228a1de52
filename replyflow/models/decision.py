"""
replyflow/models/decision.py

Entitlement decisions. Rejections and deferrals are values, not exceptions.
"""

from enum import Enum
from typing import Literal, Optional, Union
from pydantic import BaseModel, ConfigDict


class ActionKind(str, Enum):
    """Metered actions the decision service understands."""
    GENERATE_REPLY = "generate"
    POST_REPLY = "post"

    @property
    def consumes_monthly(self) -> bool:
        # Posting an already generated reply was paid for at generation time
        return self is ActionKind.GENERATE_REPLY


class Allowed(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["allowed"] = "allowed"
    plan_id: str
    monthly_used: Optional[int] = None
    posts_today: Optional[int] = None


class AllowedButDeferred(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["deferred"] = "deferred"
    plan_id: str
    reason: str = "daily posting cap reached"
    cap: int
    queue_item_id: str


class Blocked(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["blocked"] = "blocked"
    code: Literal["user_not_found", "monthly_limit_reached", "unknown_plan"]
    reason: str
    plan_id: Optional[str] = None
    cap: Optional[Literal["monthly"]] = None
    limit: Optional[int] = None
    upgrade_plan: Optional[str] = None
    upgrade_url: Optional[str] = None


DecisionResult = Union[Allowed, AllowedButDeferred, Blocked]
