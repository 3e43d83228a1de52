"""
Overflow drain worker.

Periodically publishes deferred posts as daily capacity frees up:
- Pending items are taken oldest first and grouped by user
- Each post consumes the user's daily cap atomically before publishing
- A user is skipped for the rest of the run once the cap is reached
- Publishing errors count as an attempt; items fail after max_attempts
"""
import importlib
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from replyflow.core.config import settings
from replyflow.core.errors import ConfigurationError
from replyflow.features.overflow.service import list_pending, mark_failed, mark_posted
from replyflow.features.plans.service import plan_for_tier
from replyflow.features.usage.periods import normalize_now
from replyflow.features.usage.service import ensure_counter, try_consume
from replyflow.features.users.service import get_profile
from replyflow.models.overflow import OverflowQueueItem, OverflowStatus
from replyflow.models.usage import CounterKind

logger = logging.getLogger(__name__)


class CommentPoster(Protocol):
    """Publishes a reply on the video platform."""

    def post_reply(self, item: OverflowQueueItem) -> Optional[str]:
        """
        Publish the item's reply.

        Returns:
            Platform id of the published reply, if the platform returns one

        Raises:
            Exception: Any failure; the drain records it as a failed attempt
        """
        ...


@dataclass
class DrainSummary:
    examined: int = 0
    posted: int = 0
    failed: int = 0
    deferred: int = 0  # left pending because the user's daily cap is full


def load_comment_poster(path: Optional[str] = None) -> CommentPoster:
    """Resolve a "package.module:attr" path to a poster (classes are instantiated)."""
    path = path or settings.COMMENT_POSTER
    if not path:
        raise ConfigurationError("COMMENT_POSTER is not configured")
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"COMMENT_POSTER must look like 'package.module:attr', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    return target() if isinstance(target, type) else target


def _group_by_user(items: List[OverflowQueueItem]) -> Dict[str, List[OverflowQueueItem]]:
    grouped: Dict[str, List[OverflowQueueItem]] = {}
    for item in items:
        grouped.setdefault(item.user_id, []).append(item)
    return grouped


def _drain_user(user_id: str, items: List[OverflowQueueItem], poster: CommentPoster, now: datetime, summary: DrainSummary) -> None:
    profile = get_profile(user_id)
    if profile is None:
        for item in items:
            mark_failed(item.id, attempt_increment=item.max_attempts, error_message="user not found")
            summary.failed += 1
        return

    plan = plan_for_tier(profile.tier)
    ensure_counter(user_id, plan.plan_id, now)

    for index, item in enumerate(items):
        consumed = try_consume(user_id, CounterKind.DAILY_POSTS, plan.daily_post_cap, now)
        if not consumed.allowed:
            summary.deferred += len(items) - index
            logger.info(
                "[drain] daily cap reached, deferring",
                extra={"user_id": user_id, "cap": plan.daily_post_cap, "remaining": len(items) - index},
            )
            return

        try:
            poster.post_reply(item)
        except Exception as e:
            # The daily slot stays spent; the attempt is recorded on the item
            updated = mark_failed(item.id, error_message=str(e)[:500])
            if updated.status == OverflowStatus.FAILED:
                summary.failed += 1
            logger.warning(
                "[drain] post failed",
                extra={"item_id": item.id, "user_id": user_id, "attempts": updated.attempts, "error_message": str(e)[:200]},
            )
            continue

        mark_posted(item.id, now)
        summary.posted += 1


def drain_overflow_queue(poster: CommentPoster, now: Optional[Any] = None, limit: Optional[int] = None) -> DrainSummary:
    """
    Publish pending overflow items while daily capacity allows.

    Args:
        poster: Platform client
        now: Clock override (UTC assumed for naive datetimes)
        limit: Max items examined this run (defaults to OVERFLOW_DRAIN_BATCH)

    Returns:
        DrainSummary with per-run counts
    """
    ts = normalize_now(now)
    items = list_pending(limit=limit or settings.OVERFLOW_DRAIN_BATCH)
    summary = DrainSummary(examined=len(items))

    for user_id, user_items in _group_by_user(items).items():
        _drain_user(user_id, user_items, poster, ts, summary)

    logger.info("[drain] run complete", extra=asdict(summary))
    return summary


def run_overflow_drain(limit: Optional[int] = None) -> Dict[str, int]:
    """RQ job entrypoint."""
    summary = drain_overflow_queue(load_comment_poster(), limit=limit)
    return asdict(summary)
