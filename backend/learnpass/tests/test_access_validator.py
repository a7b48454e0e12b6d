"""
Tests for content access decisions.
"""

from datetime import datetime, timedelta, timezone

import pytest

from learnpass.access.validator import (
    REASON_NOT_AVAILABLE,
    REASON_SUBSCRIPTION_REQUIRED,
    AccessDecision,
    AccessValidator,
    unlock_reason,
)
from learnpass.models.content import Video
from learnpass.models.entitlement import Entitlement
from learnpass.platform.errors import NotFoundError


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _video(db_session, video_id="vid-1", **fields):
    values = {"title": "Precision Bob", "playback_id": f"pb-{video_id}", "is_published": True}
    values.update(fields)
    video = Video(id=video_id, **values)
    db_session.add(video)
    db_session.commit()
    return video


def _entitlement(db_session, plan="signature", status="active", start=None, end=None, **fields):
    entitlement = Entitlement(
        user_id="user-1",
        plan=plan,
        status=status,
        current_period_start=start or NOW - timedelta(days=3),
        current_period_end=end or NOW + timedelta(days=27),
        **fields,
    )
    db_session.add(entitlement)
    db_session.commit()
    return entitlement


@pytest.fixture
def validator(db_session, catalog):
    return AccessValidator(db_session, catalog)


class TestContentPolicy:

    def test_unpublished_never_available(self, validator, db_session):
        _video(db_session, is_published=False, is_free=True)
        _entitlement(db_session)

        decision = validator.check_access("user-1", "vid-1", now=NOW)

        assert decision.granted is False
        assert decision.reason == REASON_NOT_AVAILABLE
        assert decision.content is None

    def test_free_content_granted_without_subscription(self, validator, db_session):
        _video(db_session, is_free=True)

        decision = validator.check_access("anonymous-user", "vid-1", now=NOW)

        assert decision.granted is True
        assert decision.content["playback_id"] == "pb-vid-1"

    def test_missing_video(self, validator):
        with pytest.raises(NotFoundError):
            validator.check_access("user-1", "nope", now=NOW)


class TestSubscriptionGate:

    def test_active_paid_plan_granted(self, validator, db_session):
        _video(db_session)
        _entitlement(db_session)

        assert validator.check_access("user-1", "vid-1", now=NOW).granted is True

    def test_no_entitlement_denied(self, validator, db_session):
        _video(db_session)

        decision = validator.check_access("user-1", "vid-1", now=NOW)

        assert decision.reason == REASON_SUBSCRIPTION_REQUIRED

    def test_free_plan_denied(self, validator, db_session):
        _video(db_session)
        _entitlement(db_session, plan="free")

        assert validator.check_access("user-1", "vid-1", now=NOW).reason == REASON_SUBSCRIPTION_REQUIRED

    @pytest.mark.parametrize("status", ["past_due", "canceled", "expired", "paused"])
    def test_inactive_status_denied(self, validator, db_session, status):
        _video(db_session)
        _entitlement(db_session, status=status)

        decision = validator.check_access("user-1", "vid-1", now=NOW)

        assert decision.granted is False
        assert decision.content is None

    def test_lapsed_period_denied(self, validator, db_session):
        _video(db_session)
        _entitlement(db_session, start=NOW - timedelta(days=40), end=NOW - timedelta(seconds=1))

        assert validator.check_access("user-1", "vid-1", now=NOW).granted is False

    def test_scheduled_cancel_still_granted(self, validator, db_session):
        _video(db_session)
        _entitlement(db_session, cancel_at_period_end=True)

        assert validator.check_access("user-1", "vid-1", now=NOW).granted is True


class TestStagedRelease:

    def test_locked_before_drip_days(self, validator, db_session):
        _video(db_session, drip_days=10)
        _entitlement(db_session, start=NOW - timedelta(days=9))

        decision = validator.check_access("user-1", "vid-1", now=NOW)

        assert decision.granted is False
        assert decision.days_remaining == 1
        assert decision.reason == "This content unlocks in 1 day"
        assert decision.content is None

    def test_unlocked_on_drip_day(self, validator, db_session):
        _video(db_session, drip_days=10)
        _entitlement(db_session, start=NOW - timedelta(days=10))

        assert validator.check_access("user-1", "vid-1", now=NOW).granted is True

    def test_partial_day_rounds_up(self, validator, db_session):
        _video(db_session, drip_days=10)
        _entitlement(db_session, start=NOW - timedelta(days=2, hours=12))

        assert validator.check_access("user-1", "vid-1", now=NOW).days_remaining == 8

    def test_no_period_start_means_no_delay(self, validator, db_session):
        _video(db_session, drip_days=10)
        entitlement = _entitlement(db_session)
        entitlement.current_period_start = None
        entitlement.created_at = NOW - timedelta(days=1)
        db_session.commit()

        decision = validator.check_access("user-1", "vid-1", now=NOW)

        assert decision.granted is True
        assert decision.content["playback_id"] == "pb-vid-1"


class TestDecision:

    def test_denial_cannot_carry_content(self):
        with pytest.raises(ValueError):
            AccessDecision(granted=False, reason="x", content={"playback_id": "pb"})

    def test_denied_response_has_no_video(self):
        body = AccessDecision.deny(unlock_reason(3), days_remaining=3).to_response()

        assert body == {
            "hasAccess": False,
            "video": None,
            "reason": "This content unlocks in 3 days",
            "daysRemaining": 3,
        }
