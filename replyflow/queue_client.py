# replyflow/queue_client.py
"""
RQ queue client for the periodic entitlement jobs.

A scheduler (cron, rq-scheduler or a platform timer) calls these to enqueue
the overflow drain and the nightly counter sweep.
"""
from datetime import datetime
from typing import Optional

from redis import Redis
from rq import Queue

from replyflow.core.config import settings
from replyflow.workers.drain_overflow import run_overflow_drain
from replyflow.workers.reset_counters import run_counter_sweep

# Initialize Redis and queue
redis_conn = Redis.from_url(settings.REDIS_URL)
queue = Queue(connection=redis_conn)


def enqueue_overflow_drain(limit: Optional[int] = None) -> str:
    """
    Enqueue one overflow drain run.

    Args:
        limit: Max items examined (defaults to OVERFLOW_DRAIN_BATCH)

    Returns:
        Job ID
    """
    job = queue.enqueue(
        run_overflow_drain,
        limit,
        job_timeout="10m",
        result_ttl=3600,  # Keep result for 1 hour
    )
    return job.id


def enqueue_counter_sweep(at: Optional[datetime] = None) -> str:
    """Enqueue the counter sweep now, or at `at` when given."""
    if at is not None:
        job = queue.enqueue_at(at, run_counter_sweep, job_timeout="10m", result_ttl=3600)
    else:
        job = queue.enqueue(run_counter_sweep, job_timeout="10m", result_ttl=3600)
    return job.id
