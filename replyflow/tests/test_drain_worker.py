"""Overflow drain worker: daily-cap aware publishing and retry accounting."""
import sys
import types
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from replyflow.core.database import get_db_session
from replyflow.core.errors import ConfigurationError
from replyflow.features.overflow.service import enqueue, get_item, list_pending
from replyflow.features.usage.service import ensure_counter, get_counter
from replyflow.models.overflow import OverflowStatus, PostRequest
from replyflow.workers.drain_overflow import drain_overflow_queue, load_comment_poster, run_overflow_drain
from replyflow.workers.reset_counters import run_counter_sweep


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
TOMORROW = NOW + timedelta(days=1)


class RecordingPoster:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.posted = []

    def post_reply(self, item):
        if item.target_comment_id in self.fail_on:
            raise RuntimeError("platform rejected reply")
        self.posted.append(item.target_comment_id)
        return f"reply_{item.id}"


def _queue(user_id, count, start=NOW):
    ids = []
    for i in range(count):
        with get_db_session() as session:
            ids.append(enqueue(
                session,
                user_id,
                PostRequest(target_comment_id=f"{user_id}_cmt_{i}", payload_text="queued reply"),
                start + timedelta(seconds=i),
            ))
    return ids


def test_drain_posts_pending_items_next_day(make_profile, set_counter):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    set_counter("user_alice", posts_today=25)
    ids = _queue("user_alice", 3)

    poster = RecordingPoster()
    summary = drain_overflow_queue(poster, TOMORROW)

    assert summary.examined == 3
    assert summary.posted == 3
    assert poster.posted == ["user_alice_cmt_0", "user_alice_cmt_1", "user_alice_cmt_2"]
    assert all(get_item(i).status == OverflowStatus.POSTED for i in ids)

    counter = get_counter("user_alice", TOMORROW)
    assert counter.posts_today == 3
    assert counter.queued_count == 0


def test_drain_stops_at_daily_cap(make_profile, set_counter):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    set_counter("user_alice", posts_today=25)
    _queue("user_alice", 3)

    summary = drain_overflow_queue(RecordingPoster(), NOW)

    assert summary.posted == 0
    assert summary.deferred == 3
    assert len(list_pending()) == 3
    assert get_counter("user_alice", NOW).posts_today == 25


def test_drain_caps_each_user_independently(make_profile, set_counter):
    make_profile("user_alice")
    make_profile("user_bob")
    ensure_counter("user_alice", "free", NOW)
    ensure_counter("user_bob", "free", NOW)
    set_counter("user_alice", posts_today=24)
    _queue("user_alice", 3)
    _queue("user_bob", 2, start=NOW + timedelta(minutes=1))

    poster = RecordingPoster()
    summary = drain_overflow_queue(poster, NOW)

    assert summary.posted == 3
    assert summary.deferred == 2
    assert poster.posted == ["user_alice_cmt_0", "user_bob_cmt_0", "user_bob_cmt_1"]
    assert [i.target_comment_id for i in list_pending()] == ["user_alice_cmt_1", "user_alice_cmt_2"]


def test_post_failures_are_retried_then_failed(make_profile):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    [item_id] = _queue("user_alice", 1)
    poster = RecordingPoster(fail_on={"user_alice_cmt_0"})

    for _ in range(2):
        summary = drain_overflow_queue(poster, NOW)
        assert summary.failed == 0
        assert get_item(item_id).status == OverflowStatus.PENDING

    summary = drain_overflow_queue(poster, NOW)

    assert summary.failed == 1
    item = get_item(item_id)
    assert item.status == OverflowStatus.FAILED
    assert item.attempts == 3
    assert item.error_message == "platform rejected reply"
    assert get_counter("user_alice", NOW).queued_count == 0
    # Each attempt spent a daily slot
    assert get_counter("user_alice", NOW).posts_today == 3


def test_items_for_deleted_users_fail_immediately():
    ensure_counter("user_gone", now=NOW)
    [item_id] = _queue("user_gone", 1)

    summary = drain_overflow_queue(RecordingPoster(), NOW)

    assert summary.failed == 1
    assert get_item(item_id).status == OverflowStatus.FAILED


def test_load_comment_poster_from_path(monkeypatch):
    module = types.ModuleType("fake_platform")
    module.RecordingPoster = RecordingPoster
    module.shared_poster = RecordingPoster()
    monkeypatch.setitem(sys.modules, "fake_platform", module)

    assert isinstance(load_comment_poster("fake_platform:RecordingPoster"), RecordingPoster)
    assert load_comment_poster("fake_platform:shared_poster") is module.shared_poster


@pytest.mark.parametrize("path", [None, "no_colon_here"])
def test_load_comment_poster_rejects_bad_config(path):
    with patch("replyflow.workers.drain_overflow.settings") as mock_settings:
        mock_settings.COMMENT_POSTER = None
        with pytest.raises(ConfigurationError):
            load_comment_poster(path)


def test_run_overflow_drain_returns_summary(make_profile):
    make_profile("user_alice")
    ensure_counter("user_alice", "free")
    _queue("user_alice", 1, start=datetime.now(timezone.utc))
    poster = Mock()

    with patch("replyflow.workers.drain_overflow.load_comment_poster", return_value=poster):
        result = run_overflow_drain()

    assert result == {"examined": 1, "posted": 1, "failed": 0, "deferred": 0}
    poster.post_reply.assert_called_once()


def test_run_counter_sweep(set_counter):
    ensure_counter("user_alice", now=NOW)
    set_counter("user_alice", posts_today=4)

    assert run_counter_sweep(TOMORROW) == 1
    assert get_counter("user_alice", TOMORROW).posts_today == 0
