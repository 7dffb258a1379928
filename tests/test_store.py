import pytest

from conftest import ts
from portal.core.errors import DuplicateRecordError
from portal.data.records import TermsAcceptance
from portal.data.store import normalize_email, to_utc


class TestUsers:
    def test_roundtrip_types(self, store):
        user = store.create_user(email=" Mixed@Case.com ", is_admin=True, onboarding_step=3)
        loaded = store.get_user(user.id)
        assert loaded.email == "mixed@case.com"
        assert loaded.is_admin is True
        assert loaded.is_whitelisted is False
        assert loaded.onboarding_step == 3
        assert loaded.created_at.tzinfo is not None

    def test_unique_discord_id(self, store):
        store.create_user(discord_id="1")
        with pytest.raises(DuplicateRecordError):
            store.create_user(discord_id="1")

    def test_update_rejects_unknown_columns(self, store):
        user = store.create_user(email="a@x.com")
        with pytest.raises(ValueError):
            store.update_user(user.id, favourite_colour="blue")

    def test_many_users_without_email(self, store):
        store.create_user(discord_id="1")
        store.create_user(discord_id="2")
        assert len(store.list_users()) == 2


class TestSubscriptions:
    def test_unique_billing_id(self, store):
        store.create_subscription(user_id="u1", billing_subscription_id="sub_1", status="active")
        with pytest.raises(DuplicateRecordError):
            store.create_subscription(user_id="u2", billing_subscription_id="sub_1", status="active")

    def test_latest_period_wins_for_user(self, store):
        store.create_subscription(
            user_id="u1", billing_subscription_id="sub_old", status="canceled", current_period_end=ts(2024, 1, 1)
        )
        store.create_subscription(
            user_id="u1", billing_subscription_id="sub_new", status="active", current_period_end=ts(2025, 1, 1)
        )
        assert store.get_subscription_by_user("u1").billing_subscription_id == "sub_new"

    def test_open_ended_record_does_not_outrank_dated_one(self, store):
        store.create_subscription(
            user_id="u1", billing_subscription_id="sub_dated", status="active", current_period_end=ts(2025, 1, 1)
        )
        store.create_subscription(user_id="u1", billing_subscription_id="sub_open", status="incomplete")
        assert store.get_subscription_by_user("u1").billing_subscription_id == "sub_dated"

    def test_timestamps_are_utc(self, store):
        sub = store.create_subscription(
            user_id="u1", billing_subscription_id="sub_1", status="past_due", grace_period_end=ts(2025, 1, 3)
        )
        assert store.get_subscription(sub.id).grace_period_end == ts(2025, 1, 3)


class TestConfigAndAudit:
    def test_config_upsert_keeps_description(self, store):
        store.set_config("grace_period_days", "2", "Days of access after a failed payment")
        entry = store.set_config("grace_period_days", "3")
        assert entry.value == "3"
        assert entry.description == "Days of access after a failed payment"
        assert len(store.list_config()) == 1

    def test_terms_are_append_only(self, store):
        for version in ("1.0", "1.1"):
            store.add_terms_acceptance(
                TermsAcceptance(
                    user_id="u1",
                    terms_version=version,
                    terms_version_date="2025-01-01",
                    content_hash="h",
                    acceptance_method="checkbox",
                )
            )
        assert store.count_terms_acceptances("u1") == 2

    def test_event_dedupe(self, store):
        assert store.mark_event_processed("evt_1") is True
        assert store.mark_event_processed("evt_1") is False
        store.forget_event("evt_1")
        assert store.mark_event_processed("evt_1") is True


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2025-01-03T00:00:00+00:00", ts(2025, 1, 3)),
        ("2025-01-03 00:00:00", ts(2025, 1, 3)),
        ("2025-01-03T00:00:00Z", ts(2025, 1, 3)),
        ("", None),
        ("garbage", None),
        (None, None),
    ],
)
def test_to_utc(raw, expected):
    assert to_utc(raw) == expected


def test_normalize_email():
    assert normalize_email("  A@B.com ") == "a@b.com"
    assert normalize_email("   ") is None
