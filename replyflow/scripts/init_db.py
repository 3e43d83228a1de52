#!/usr/bin/env python3
"""
Database bootstrap.

Creates the entitlement tables and mirrors the plan catalog.

Usage:
    python -m replyflow.scripts.init_db [--database-url URL] [--reset]

--reset drops every table first. Development databases only.
"""
import argparse
import sys

from replyflow.core.config import settings
from replyflow.core.database import check_connection, create_all_tables, init_engine, reset_database
from replyflow.core.logging import configure_logging
from replyflow.features.plans.service import list_plans, seed_plans, validate_catalog


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create replyflow tables and seed plans")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--reset", action="store_true", help="Drop and recreate all tables")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    validate_catalog()
    init_engine(args.database_url)

    if not check_connection():
        print("ERROR: database unreachable")
        return 1

    if args.reset:
        if settings.ENV.lower() == "production":
            print("ERROR: --reset is not allowed in production")
            return 1
        reset_database()
    else:
        create_all_tables()

    seed_plans()
    for plan in list_plans():
        limit = "unlimited" if plan.is_unlimited else plan.monthly_action_limit
        print(f"  {plan.plan_id}: {limit} actions/month, {plan.daily_post_cap} posts/day")
    return 0


if __name__ == "__main__":
    sys.exit(main())
