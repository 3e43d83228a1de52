"""
replyflow/models/overflow.py

Overflow queue items: posts that were entitled under the monthly cap but
arrived after the daily posting cap was exhausted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class OverflowStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    FAILED = "failed"


class PostRequest(BaseModel):
    """What to publish when a decision includes posting now."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    target_comment_id: str = Field(min_length=1)
    payload_text: str = Field(min_length=1)
    video_id: Optional[str] = None


class OverflowQueueItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    target_comment_id: str
    payload_text: str
    video_id: Optional[str] = None
    status: OverflowStatus = OverflowStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    created_at: datetime
    posted_at: Optional[datetime] = None
