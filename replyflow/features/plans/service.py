"""
replyflow/features/plans/service.py

Plan catalog.

Handles:
- Static plan definitions (free, pro) and tier -> plan mapping
- Startup validation (unknown/misconfigured plans are fatal)
- Plan seeding into the plans table (idempotent)
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List
from sqlalchemy import select, insert, update

from replyflow.core.database import get_db_session, plans
from replyflow.core.errors import ConfigurationError, UnknownPlanError
from replyflow.models.plan import Plan
from replyflow.models.subscription import Tier


logger = logging.getLogger(__name__)


# Deploy-time plan definitions. Unlimited plans still carry a daily fair-use cap.
PLAN_CATALOG: Dict[str, Plan] = {
    "free": Plan(
        plan_id="free",
        name="Free Plan",
        monthly_action_limit=50,
        daily_post_cap=25,
        is_default=True,
    ),
    "pro": Plan(
        plan_id="pro",
        name="Pro Plan",
        monthly_action_limit=None,
        daily_post_cap=100,
    ),
}

TIER_PLANS: Dict[Tier, str] = {
    Tier.FREE: "free",
    Tier.PRO: "pro",
}

# Plan suggested on a policy rejection, keyed by the rejected plan
UPGRADE_PATHS: Dict[str, str] = {
    "free": "pro",
}


def get_plan(plan_id: str) -> Plan:
    """Get plan by ID. Raises UnknownPlanError for ids outside the catalog."""
    plan = PLAN_CATALOG.get(plan_id)
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan


def list_plans() -> List[Plan]:
    return list(PLAN_CATALOG.values())


def get_default_plan() -> Plan:
    for plan in PLAN_CATALOG.values():
        if plan.is_default:
            return plan
    raise ConfigurationError("No default plan configured")


def plan_for_tier(tier: Tier) -> Plan:
    plan_id = TIER_PLANS.get(Tier(tier))
    if plan_id is None:
        raise UnknownPlanError(str(tier))
    return get_plan(plan_id)


def upgrade_plan_for(plan_id: str):
    return UPGRADE_PATHS.get(plan_id)


def validate_catalog() -> None:
    """Fail fast on a broken catalog. Called once at startup."""
    defaults = [p.plan_id for p in PLAN_CATALOG.values() if p.is_default]
    if len(defaults) != 1:
        raise ConfigurationError(f"Expected exactly one default plan, found {defaults}")

    for plan_id, plan in PLAN_CATALOG.items():
        if plan.plan_id != plan_id:
            raise ConfigurationError(f"Plan key {plan_id} does not match plan_id {plan.plan_id}")
        if plan.daily_post_cap is None or plan.daily_post_cap <= 0:
            raise ConfigurationError(f"Plan {plan_id} needs a positive daily_post_cap")
        if plan.monthly_action_limit is not None and plan.monthly_action_limit < 0:
            raise ConfigurationError(f"Plan {plan_id} has a negative monthly_action_limit")

    for tier in Tier:
        if TIER_PLANS.get(tier) not in PLAN_CATALOG:
            raise UnknownPlanError(str(TIER_PLANS.get(tier)))

    for source, target in UPGRADE_PATHS.items():
        if source not in PLAN_CATALOG or target not in PLAN_CATALOG:
            raise ConfigurationError(f"Upgrade path {source}->{target} references an unknown plan")


def seed_plans() -> None:
    """
    Mirror the catalog into the plans table (idempotent).

    Existing rows are updated to the deployed caps. Safe to call on every boot.
    """
    now = datetime.now(timezone.utc)

    with get_db_session() as session:
        for plan in PLAN_CATALOG.values():
            values = dict(
                name=plan.name,
                monthly_action_limit=plan.monthly_action_limit,
                daily_post_cap=plan.daily_post_cap,
                is_default=plan.is_default,
            )
            existing = session.execute(
                select(plans.c.plan_id).where(plans.c.plan_id == plan.plan_id)
            ).first()

            if existing:
                session.execute(
                    update(plans).where(plans.c.plan_id == plan.plan_id).values(**values)
                )
            else:
                session.execute(
                    insert(plans).values(plan_id=plan.plan_id, created_at=now, **values)
                )

    logger.info("[plans] catalog seeded", extra={"plans": sorted(PLAN_CATALOG)})
