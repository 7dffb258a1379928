import datetime as dt

import pytest

from conftest import ts
from portal.data.records import Subscription, User
from portal.services.access import (
    AccessPolicy,
    can_access_portal,
    evaluate_access,
    grace_period_end,
    is_in_onboarding,
    needs_subscription_lookup,
    setup_status,
)

PERIOD_END = ts(2025, 1, 1)
BEFORE_GRACE_END = ts(2025, 1, 2)
AFTER_GRACE_END = ts(2025, 1, 4)


def _sub(status: str, period_end: dt.datetime = PERIOD_END, grace_days: int = 2) -> Subscription:
    return Subscription(
        id="s1",
        user_id="u1",
        billing_customer_id="cus_1",
        billing_subscription_id="sub_1",
        status=status,
        current_period_end=period_end,
        grace_period_end=grace_period_end(period_end, grace_days),
    )


def _onboarded(**kw) -> User:
    values = dict(id="u1", email="a@x.com", discord_id="d1", password_hash="hash", onboarding_step=5)
    values.update(kw)
    return User(**values)


class TestCanAccessPortal:
    """Subscription status x time-vs-grace table."""

    @pytest.mark.parametrize(
        "status,now,expected",
        [
            ("active", BEFORE_GRACE_END, True),
            ("active", AFTER_GRACE_END, True),
            ("trialing", BEFORE_GRACE_END, True),
            ("trialing", AFTER_GRACE_END, True),
            ("past_due", BEFORE_GRACE_END, True),
            ("past_due", AFTER_GRACE_END, False),
            ("unpaid", BEFORE_GRACE_END, False),
            ("unpaid", AFTER_GRACE_END, False),
            ("canceled", BEFORE_GRACE_END, False),
            ("canceled", AFTER_GRACE_END, False),
        ],
    )
    def test_status_table(self, status, now, expected):
        assert can_access_portal(_sub(status), now) is expected

    @pytest.mark.parametrize("now", [BEFORE_GRACE_END, AFTER_GRACE_END])
    def test_no_subscription_is_denied(self, now):
        assert can_access_portal(None, now) is False

    def test_past_due_two_day_grace(self):
        """Period ended 2025-01-01 with a two day grace."""
        sub = _sub("past_due")
        assert sub.grace_period_end == ts(2025, 1, 3)
        assert can_access_portal(sub, dt.datetime(2025, 1, 2, 12, tzinfo=dt.timezone.utc)) is True
        assert can_access_portal(sub, dt.datetime(2025, 1, 3, 0, 0, 1, tzinfo=dt.timezone.utc)) is False

    def test_grace_end_is_inclusive(self):
        assert can_access_portal(_sub("past_due"), ts(2025, 1, 3)) is True

    def test_past_due_without_stored_grace_is_denied(self):
        sub = _sub("past_due")
        sub.grace_period_end = None
        assert can_access_portal(sub, BEFORE_GRACE_END) is False

    def test_stored_grace_is_used_not_recomputed(self):
        """Changing the configured grace later must not move an existing window."""
        sub = _sub("past_due", grace_days=5)
        assert can_access_portal(sub, AFTER_GRACE_END) is True

    def test_unknown_status_is_denied(self):
        assert can_access_portal(_sub("paused"), BEFORE_GRACE_END) is False

    def test_accepts_naive_and_text_timestamps(self):
        sub = _sub("past_due")
        sub.grace_period_end = "2025-01-03T00:00:00"
        assert can_access_portal(sub, dt.datetime(2025, 1, 2)) is True


class TestEvaluateAccess:
    def test_admin_without_subscription(self):
        verdict = evaluate_access(_onboarded(is_admin=True), None)
        assert verdict.granted and verdict.reason == "admin"

    def test_manual_subscription(self):
        verdict = evaluate_access(_onboarded(has_manual_subscription=True), None)
        assert verdict.granted and verdict.reason == "manual_subscription"

    def test_onboarding_bypass_reports_missing_items(self):
        user = User(id="u1", email="pay@x.com", onboarding_step=2)
        verdict = evaluate_access(user, None)
        assert verdict.granted
        assert verdict.reason == "onboarding"
        assert verdict.missing == ["password", "discord"]

    def test_onboarding_bypass_can_be_turned_off(self):
        user = User(id="u1", email="pay@x.com", onboarding_step=2)
        verdict = evaluate_access(user, None, policy=AccessPolicy(onboarding_bypass=False))
        assert not verdict.granted
        assert verdict.reason == "no_subscription"

    def test_onboarded_user_needs_subscription(self):
        assert evaluate_access(_onboarded(), None).reason == "no_subscription"
        verdict = evaluate_access(_onboarded(), _sub("canceled"), now=BEFORE_GRACE_END)
        assert not verdict.granted and verdict.reason == "expired"

    def test_onboarded_user_with_active_subscription(self):
        verdict = evaluate_access(_onboarded(), _sub("active"), now=AFTER_GRACE_END)
        assert verdict.granted and verdict.reason == "subscription"

    def test_mid_onboarding_step_counts_as_onboarding(self):
        assert is_in_onboarding(_onboarded(onboarding_step=3), final_step=5)
        assert not is_in_onboarding(_onboarded(onboarding_step=0), final_step=5)

    def test_setup_status(self):
        assert setup_status(_onboarded()) == []
        assert setup_status(_onboarded(discord_id=None)) == ["discord"]

    def test_subscription_lookup_skipped_for_privileged_users(self):
        assert not needs_subscription_lookup(_onboarded(is_admin=True))
        assert not needs_subscription_lookup(_onboarded(has_manual_subscription=True))
        assert needs_subscription_lookup(_onboarded())


def test_grace_period_end_none_without_period():
    assert grace_period_end(None, 2) is None
