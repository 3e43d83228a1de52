"""
replyflow/models/plan.py

Plan model: a capability tier with its metering caps.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(BaseModel):
    """
    Plan represents a capability tier.

    Examples:
    - free (default): 50 metered actions per month, 25 posts per day
    - pro: unlimited metered actions, 100 posts per day fair-use ceiling

    monthly_action_limit=None means unlimited. daily_post_cap is always
    finite, even on unlimited plans.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    monthly_action_limit: Optional[int] = None
    daily_post_cap: int
    is_default: bool = False

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_action_limit is None
