"""
Entitlement decision tests.

Monthly limit before daily cap, deferral into the overflow queue, and the
free-plan end-to-end scenario.
"""
import pytest
from datetime import datetime, timezone

from replyflow.core.errors import ValidationError
from replyflow.features.entitlements.service import decide
from replyflow.features.overflow.service import get_item, list_pending
from replyflow.features.usage.service import ensure_counter, get_counter
from replyflow.models.decision import ActionKind, Allowed, AllowedButDeferred, Blocked
from replyflow.models.overflow import OverflowStatus, PostRequest


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
POST = PostRequest(target_comment_id="cmt_1", payload_text="Thanks for watching!", video_id="vid_1")


def test_free_plan_end_to_end_blocks_at_fifty(make_profile, set_counter):
    """49/50 used: the 50th action is allowed, the 51st is blocked."""
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    set_counter("user_alice", actions_used_this_month=49)

    first = decide("user_alice", ActionKind.GENERATE_REPLY, False, NOW)
    assert isinstance(first, Allowed)
    assert first.plan_id == "free"
    assert first.monthly_used == 50

    second = decide("user_alice", ActionKind.GENERATE_REPLY, False, NOW)
    assert isinstance(second, Blocked)
    assert second.code == "monthly_limit_reached"
    assert second.reason == "monthly limit reached"
    assert second.cap == "monthly"
    assert second.limit == 50
    assert second.upgrade_plan == "pro"
    assert second.upgrade_url

    assert get_counter("user_alice", NOW).actions_used_this_month == 50


def test_first_decision_creates_counter_on_default_plan(make_profile):
    make_profile("user_alice")

    result = decide("user_alice", ActionKind.GENERATE_REPLY, False, NOW)

    assert isinstance(result, Allowed)
    counter = get_counter("user_alice", NOW)
    assert counter.plan_id == "free"
    assert counter.actions_used_this_month == 1


def test_unknown_user_is_blocked():
    result = decide("ghost", ActionKind.GENERATE_REPLY, False, NOW)

    assert isinstance(result, Blocked)
    assert result.code == "user_not_found"
    assert get_counter("ghost", NOW) is None


def test_pro_plan_defers_at_daily_cap(make_profile, set_counter):
    """Unlimited monthly plan at its daily cap: deferred, not blocked."""
    make_profile("user_pro", customer_id="cus_pro", tier="pro", status="active")
    ensure_counter("user_pro", "pro", NOW)
    set_counter("user_pro", actions_used_this_month=5000, posts_today=100)

    result = decide("user_pro", ActionKind.GENERATE_REPLY, True, NOW, post=POST)

    assert isinstance(result, AllowedButDeferred)
    assert result.reason == "daily posting cap reached"
    assert result.cap == 100

    item = get_item(result.queue_item_id)
    assert item.status == OverflowStatus.PENDING
    assert item.user_id == "user_pro"
    assert item.target_comment_id == "cmt_1"
    assert item.payload_text == "Thanks for watching!"

    counter = get_counter("user_pro", NOW)
    assert counter.queued_count == 1
    assert counter.posts_today == 100
    # The monthly action was consumed even though posting was deferred
    assert counter.actions_used_this_month == 5001


def test_post_now_within_cap_is_allowed(make_profile):
    make_profile("user_alice")

    result = decide("user_alice", ActionKind.GENERATE_REPLY, True, NOW, post=POST)

    assert isinstance(result, Allowed)
    assert result.monthly_used == 1
    assert result.posts_today == 1
    assert list_pending() == []


def test_monthly_limit_checked_before_daily_cap(make_profile, set_counter):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    set_counter("user_alice", actions_used_this_month=50, posts_today=25)

    result = decide("user_alice", ActionKind.GENERATE_REPLY, True, NOW, post=POST)

    assert isinstance(result, Blocked)
    assert result.code == "monthly_limit_reached"
    # Nothing was queued and the daily counter was not touched
    assert list_pending() == []
    counter = get_counter("user_alice", NOW)
    assert counter.posts_today == 25
    assert counter.queued_count == 0


def test_post_reply_skips_monthly_counter(make_profile, set_counter):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    set_counter("user_alice", actions_used_this_month=50)

    result = decide("user_alice", ActionKind.POST_REPLY, True, NOW, post=POST)

    assert isinstance(result, Allowed)
    assert result.monthly_used is None
    assert result.posts_today == 1
    assert get_counter("user_alice", NOW).actions_used_this_month == 50


def test_post_now_without_post_request_is_rejected(make_profile):
    make_profile("user_alice")

    with pytest.raises(ValidationError):
        decide("user_alice", ActionKind.GENERATE_REPLY, True, NOW)

    # Validation happens before anything is consumed
    assert get_counter("user_alice", NOW) is None


def test_downgraded_user_gets_free_caps(make_profile, set_counter):
    make_profile("user_alice", customer_id="cus_1", tier="pro", status="active")
    ensure_counter("user_alice", "pro", NOW)
    set_counter("user_alice", actions_used_this_month=80)

    assert isinstance(decide("user_alice", ActionKind.GENERATE_REPLY, False, NOW), Allowed)

    make_profile("user_alice", customer_id="cus_1", tier="free", status="canceled")
    result = decide("user_alice", ActionKind.GENERATE_REPLY, False, NOW)

    assert isinstance(result, Blocked)
    assert result.plan_id == "free"
    assert get_counter("user_alice", NOW).plan_id == "free"


def test_new_month_unblocks_free_user(make_profile, set_counter):
    make_profile("user_alice")
    ensure_counter("user_alice", "free", NOW)
    set_counter("user_alice", actions_used_this_month=50)

    assert isinstance(decide("user_alice", ActionKind.GENERATE_REPLY, False, NOW), Blocked)

    result = decide(
        "user_alice",
        ActionKind.GENERATE_REPLY,
        False,
        datetime(2026, 4, 1, 0, 0, 1, tzinfo=timezone.utc),
    )
    assert isinstance(result, Allowed)
    assert result.monthly_used == 1
