"""Nightly counter sweep. Keeps idle counters fresh for reporting only."""
import logging
from typing import Any, Optional

from replyflow.features.usage.service import sweep_rollover

logger = logging.getLogger(__name__)


def run_counter_sweep(now: Optional[Any] = None) -> int:
    """RQ job entrypoint. Returns the number of period resets applied."""
    resets = sweep_rollover(now)
    logger.info(f"[sweep] applied {resets} period resets")
    return resets
