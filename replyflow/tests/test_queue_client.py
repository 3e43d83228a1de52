"""RQ enqueue helpers."""
from datetime import datetime, timezone
from unittest.mock import patch

from replyflow import queue_client
from replyflow.workers.drain_overflow import run_overflow_drain
from replyflow.workers.reset_counters import run_counter_sweep


def test_enqueue_overflow_drain():
    with patch.object(queue_client, "queue") as mock_queue:
        mock_queue.enqueue.return_value.id = "job_1"
        job_id = queue_client.enqueue_overflow_drain(limit=50)

    assert job_id == "job_1"
    args, kwargs = mock_queue.enqueue.call_args
    assert args == (run_overflow_drain, 50)
    assert kwargs["job_timeout"] == "10m"


def test_enqueue_counter_sweep_now_and_later():
    at = datetime(2026, 3, 16, 0, 5, tzinfo=timezone.utc)
    with patch.object(queue_client, "queue") as mock_queue:
        mock_queue.enqueue.return_value.id = "job_now"
        mock_queue.enqueue_at.return_value.id = "job_later"

        assert queue_client.enqueue_counter_sweep() == "job_now"
        assert queue_client.enqueue_counter_sweep(at=at) == "job_later"

    mock_queue.enqueue.assert_called_once()
    assert mock_queue.enqueue.call_args.args == (run_counter_sweep,)
    assert mock_queue.enqueue_at.call_args.args == (at, run_counter_sweep)
