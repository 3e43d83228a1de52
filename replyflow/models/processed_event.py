"""Idempotency record for inbound billing events."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict


class ProcessedEventRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    payload: Optional[Dict[str, Any]] = None
    processed: bool = False
    outcome: Optional[str] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
