"""
Overflow queue.

Posts that were entitled under the monthly cap but arrived after the daily
posting cap was exhausted. Items are created by the decision service and
only the drain worker operations (mark_posted, mark_failed) move them out
of pending.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, insert, update, case
from sqlalchemy.orm import Session

from replyflow.core.config import settings
from replyflow.core.database import get_db_session, overflow_queue
from replyflow.core.errors import NotFoundError
from replyflow.features.usage.periods import ensure_utc, normalize_now
from replyflow.features.usage.service import decrement_queued, increment_queued
from replyflow.models.overflow import OverflowQueueItem, OverflowStatus, PostRequest


logger = logging.getLogger(__name__)


def _row_to_item(row) -> OverflowQueueItem:
    return OverflowQueueItem(
        id=row.id,
        user_id=row.user_id,
        target_comment_id=row.target_comment_id,
        payload_text=row.payload_text,
        video_id=row.video_id,
        status=OverflowStatus(row.status),
        attempts=int(row.attempts or 0),
        max_attempts=int(row.max_attempts),
        error_message=row.error_message,
        created_at=ensure_utc(row.created_at),
        posted_at=ensure_utc(row.posted_at),
    )


def enqueue(session: Session, user_id: str, post: PostRequest, now: Optional[datetime] = None) -> str:
    """Insert a pending item and bump the user's queued_count.

    Runs inside the caller's session so the item and the count commit
    together.
    """
    ts = normalize_now(now)
    item_id = str(uuid.uuid4())
    session.execute(
        insert(overflow_queue).values(
            id=item_id,
            user_id=user_id,
            target_comment_id=post.target_comment_id,
            payload_text=post.payload_text,
            video_id=post.video_id,
            status=OverflowStatus.PENDING.value,
            attempts=0,
            max_attempts=settings.OVERFLOW_MAX_ATTEMPTS,
            created_at=ts,
        )
    )
    increment_queued(session, user_id)
    return item_id


def get_item(item_id: str) -> Optional[OverflowQueueItem]:
    with get_db_session() as session:
        row = session.execute(select(overflow_queue).where(overflow_queue.c.id == item_id)).first()
        if not row:
            return None
        return _row_to_item(row)


def list_pending(user_id: Optional[str] = None, limit: int = 100) -> List[OverflowQueueItem]:
    """Pending items with attempts left, oldest first."""
    stmt = (
        select(overflow_queue)
        .where(overflow_queue.c.status == OverflowStatus.PENDING.value)
        .where(overflow_queue.c.attempts < overflow_queue.c.max_attempts)
        .order_by(overflow_queue.c.created_at.asc(), overflow_queue.c.id.asc())
        .limit(limit)
    )
    if user_id is not None:
        stmt = stmt.where(overflow_queue.c.user_id == user_id)

    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [_row_to_item(r) for r in rows]


def mark_posted(item_id: str, now: Optional[datetime] = None) -> OverflowQueueItem:
    """
    Transition a pending item to posted and release its queued slot.

    Items that already left pending are returned unchanged.

    Raises:
        NotFoundError: If no item has this id
    """
    ts = normalize_now(now)
    with get_db_session() as session:
        row = session.execute(
            update(overflow_queue)
            .where(overflow_queue.c.id == item_id)
            .where(overflow_queue.c.status == OverflowStatus.PENDING.value)
            .values(status=OverflowStatus.POSTED.value, posted_at=ts, error_message=None)
            .returning(overflow_queue.c.user_id)
        ).first()
        if row is not None:
            decrement_queued(session, row.user_id)

    item = get_item(item_id)
    if item is None:
        raise NotFoundError(f"Overflow item {item_id} not found")
    if row is not None:
        logger.info("[overflow] posted", extra={"item_id": item_id, "user_id": item.user_id})
    return item


def mark_failed(
    item_id: str,
    attempt_increment: int = 1,
    error_message: Optional[str] = None,
) -> OverflowQueueItem:
    """
    Record a failed posting attempt.

    The item stays pending until attempts reach max_attempts, then becomes
    failed and its queued slot is released.

    Raises:
        NotFoundError: If no item has this id
    """
    new_attempts = overflow_queue.c.attempts + attempt_increment
    with get_db_session() as session:
        row = session.execute(
            update(overflow_queue)
            .where(overflow_queue.c.id == item_id)
            .where(overflow_queue.c.status == OverflowStatus.PENDING.value)
            .values(
                attempts=new_attempts,
                error_message=error_message,
                status=case(
                    (new_attempts >= overflow_queue.c.max_attempts, OverflowStatus.FAILED.value),
                    else_=OverflowStatus.PENDING.value,
                ),
            )
            .returning(overflow_queue.c.user_id, overflow_queue.c.status, overflow_queue.c.attempts)
        ).first()
        if row is not None and row.status == OverflowStatus.FAILED.value:
            decrement_queued(session, row.user_id)

    item = get_item(item_id)
    if item is None:
        raise NotFoundError(f"Overflow item {item_id} not found")
    if row is not None:
        level = logging.ERROR if item.status == OverflowStatus.FAILED else logging.WARNING
        logger.log(
            level,
            "[overflow] attempt failed",
            extra={
                "item_id": item_id,
                "user_id": item.user_id,
                "attempts": item.attempts,
                "max_attempts": item.max_attempts,
                "status": item.status.value,
            },
        )
    return item
