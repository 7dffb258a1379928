import dataclasses
import datetime as dt
import json

import pytest
from fastapi.testclient import TestClient

from conftest import ts
from portal.adapters.discord import DiscordProfile, OAuthToken
from portal.main import create_app
from portal.services.credentials import hash_password
from portal.services.sessions import decode_session, issue_session


@pytest.fixture
def make_client(store, billing, guild, settings):
    def _make(oauth=None, **overrides):
        cfg = dataclasses.replace(settings, **overrides) if overrides else settings
        return TestClient(create_app(cfg, store=store, billing=billing, community=guild, oauth=oauth))

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


def _auth(user, hours=1):
    return {"Authorization": f"Bearer {issue_session(user, 'test-secret', dt.timedelta(hours=hours))}"}


def _member(store, email="m@x.com", password="correct-horse", **kw):
    values = dict(
        email=email, discord_id="d1", password_hash=hash_password(password), onboarding_step=5
    )
    values.update(kw)
    user = store.create_user(**values)
    store.create_subscription(
        user_id=user.id, billing_subscription_id=f"sub_{user.id}", billing_customer_id="cus_1", status="active"
    )
    return user


def _lapsed(store, email="old@x.com", password="correct-horse"):
    user = store.create_user(
        email=email, discord_id="d3", password_hash=hash_password(password), onboarding_step=5
    )
    store.create_subscription(
        user_id=user.id, billing_subscription_id="sub_gone", status="canceled", current_period_end=ts(2024, 1, 1)
    )
    return user


class FakeOAuth:
    def __init__(self, profile):
        self.profile = profile

    def authorize_url(self, state=None):
        return "https://discord.test/authorize"

    async def exchange_code(self, code):
        return OAuthToken(access_token="at-1", scope="identify email guilds.join")

    async def get_profile(self, access_token):
        return self.profile


class TestHealth:
    def test_healthz(self, client):
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json() == {"ok": True}
        assert r.headers["x-content-type-options"] == "nosniff"

    def test_db_health(self, client, monkeypatch):
        monkeypatch.delenv("HEALTH_TOKEN", raising=False)
        assert client.get("/api/_db/health").json() == {"dialect": "sqlite", "ok": True}


class TestAuthRoutes:
    def test_password_login_then_gated_profile(self, client, store):
        _member(store)
        r = client.post("/api/auth/login", json={"email": "M@x.com", "password": "correct-horse"})
        assert r.status_code == 200
        body = r.json()
        assert body["canAccess"] is True
        assert body["accessReason"] == "subscription"
        assert body["user"]["hasPassword"] is True
        assert "password_hash" not in body["user"]

        r = client.get("/api/user/profile", headers={"Authorization": f"Bearer {body['token']}"})
        assert r.status_code == 200
        assert r.json()["email"] == "m@x.com"

    def test_bad_password(self, client, store):
        _member(store)
        r = client.post("/api/auth/login", json={"email": "m@x.com", "password": "nope"})
        assert r.status_code == 401
        assert r.json()["reason"] == "invalid_credentials"

    def test_login_is_rate_limited(self, make_client):
        client = make_client(LOGIN_RL_PER_MIN=2)
        codes = [
            client.post("/api/auth/login", json={"email": "x@x.com", "password": "nope"}).status_code
            for _ in range(3)
        ]
        assert codes == [401, 401, 429]

    def test_me_refreshes_token_with_same_lifetime(self, client, store):
        user = _member(store)
        r = client.get("/api/auth/me", headers=_auth(user, hours=24))
        assert r.status_code == 200
        body = r.json()
        assert body["canAccess"] is True
        assert body["setupComplete"] is True
        claims = decode_session(body["token"], "test-secret")
        assert claims["exp"] - claims["iat"] == 24 * 3600

    def test_setup_status(self, client, store):
        user = store.create_user(email="new@x.com", onboarding_step=2)
        r = client.get("/api/auth/setup-status", headers=_auth(user))
        assert r.json() == {
            "setupComplete": False,
            "missingItems": ["password", "discord"],
            "needsPassword": True,
            "needsDiscord": True,
        }

    def test_set_password(self, client, store):
        user = store.create_user(email="new@x.com", onboarding_step=2)
        r = client.post("/api/auth/password", json={"password": "a-long-password"}, headers=_auth(user))
        assert r.status_code == 200
        assert r.json()["user"]["onboardingStep"] == 3
        assert client.post("/api/auth/password", json={"password": "short"}, headers=_auth(user)).status_code == 422

    def test_terms_acceptance_is_audited(self, client, store):
        user = store.create_user(email="t@x.com")
        r = client.post(
            "/api/auth/terms",
            json={"termsVersion": "1.0", "termsVersionDate": "2025-01-01", "termsContent": "Be nice."},
            headers={**_auth(user), "User-Agent": "pytest"},
        )
        assert r.status_code == 200
        assert r.json()["user"]["termsAccepted"] is True
        assert r.json()["acceptanceCount"] == 1
        assert store.count_terms_acceptances(user.id) == 1

    def test_login_after_payment_needs_an_identifier(self, client):
        assert client.post("/api/auth/login-after-payment", json={}).status_code == 400

    def test_login_after_payment(self, client, billing):
        billing.add_subscription("sub_lap", customer_id="cus_lap", email="lap@x.com")
        r = client.post("/api/auth/login-after-payment", json={"subscriptionId": "sub_lap"})
        assert r.status_code == 200
        body = r.json()
        assert body["user"]["email"] == "lap@x.com"
        assert body["subscription"]["status"] == "active"
        assert body["needsDiscordOAuth"] is True

    def test_discord_callback_without_code(self, client):
        r = client.get("/api/auth/discord/callback", follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "https://portal.test?error=no_code"

    def test_discord_login_not_configured(self, client):
        r = client.post("/api/auth/discord", json={"code": "abc"})
        assert r.status_code == 503
        assert r.json()["reason"] == "service_unavailable"


class TestGate:
    def test_missing_token(self, client):
        r = client.get("/api/user/profile")
        assert r.status_code == 401
        assert r.json()["detail"] == "Access token required"

    def test_invalid_token(self, client):
        r = client.get("/api/user/profile", headers={"Authorization": "Bearer junk"})
        assert r.status_code == 401
        assert r.json()["reason"] == "invalid_token"

    def test_expired_subscription(self, client, store):
        user = store.create_user(email="late@x.com", discord_id="d1", password_hash="hash", onboarding_step=5)
        store.create_subscription(
            user_id=user.id,
            billing_subscription_id="sub_late",
            status="past_due",
            current_period_end=ts(2025, 1, 1),
            grace_period_end=ts(2025, 1, 3),
        )
        r = client.get("/api/user/profile", headers=_auth(user))
        assert r.status_code == 403
        body = r.json()
        assert body["reason"] == "expired"
        assert body["error"] == "Subscription required"

    def test_profile_email_conflict(self, client, store):
        store.create_user(email="taken@x.com")
        user = _member(store)
        r = client.put("/api/user/profile", json={"email": "taken@x.com"}, headers=_auth(user))
        assert r.status_code == 409
        assert r.json()["reason"] == "email_taken"


class TestPaymentRoutes:
    def test_webhook_rejects_bad_signature(self, client):
        r = client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "forged"})
        assert r.status_code == 400
        assert r.json() == {"ok": False, "reason": "invalid_signature"}

    def test_webhook_not_configured(self, make_client):
        client = make_client(STRIPE_WEBHOOK_SECRET=None)
        r = client.post("/api/payments/webhook", content=b"{}", headers={"stripe-signature": "valid"})
        assert r.status_code == 400
        assert r.json()["reason"] == "stripe_not_configured"

    def test_webhook_applies_event(self, client, billing, store):
        billing.add_subscription("sub_hook", customer_id="cus_hook", email="hook@x.com")
        event = {
            "id": "evt_hook",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_hook", "subscription": "sub_hook", "customer_email": "hook@x.com"}},
        }
        r = client.post(
            "/api/payments/webhook", content=json.dumps(event).encode(), headers={"stripe-signature": "valid"}
        )
        assert r.status_code == 200
        assert r.json() == {"ok": True, "received": True, "outcome": "applied"}
        assert store.get_user_by_email("hook@x.com").is_whitelisted

    def test_webhook_billing_outage_asks_for_retry(self, client, billing):
        billing.unavailable = True
        event = {
            "id": "evt_down",
            "type": "invoice.payment_succeeded",
            "data": {"object": {"id": "in_1", "subscription": "sub_x"}},
        }
        r = client.post(
            "/api/payments/webhook", content=json.dumps(event).encode(), headers={"stripe-signature": "valid"}
        )
        assert r.status_code == 503

    def test_subscription_status(self, client, store):
        user = _member(store)
        body = client.get("/api/payments/subscription", headers=_auth(user)).json()
        assert body["hasSubscription"] is True
        assert body["canAccess"] is True

    def test_cancel_at_period_end(self, client, billing, store):
        user = _member(store)
        billing.add_subscription(f"sub_{user.id}", customer_id="cus_1", email="m@x.com")
        r = client.post("/api/payments/cancel", json={"cancelAtPeriodEnd": True}, headers=_auth(user))
        assert r.status_code == 200
        assert r.json()["subscription"]["cancelAtPeriodEnd"] is True

    def test_refund_requires_admin(self, client, store):
        user = _member(store)
        r = client.post("/api/payments/admin/refund", json={"paymentIntentId": "pi_1"}, headers=_auth(user))
        assert r.status_code == 403
        assert r.json()["reason"] == "admin_required"


class TestAdminRoutes:
    def test_non_admin_rejected(self, client, store):
        user = _member(store)
        r = client.get("/api/admin/users", headers=_auth(user))
        assert r.status_code == 403
        assert r.json()["reason"] == "admin_required"

    def test_list_users(self, client, store):
        admin = store.create_user(email="admin@x.com", is_admin=True)
        _member(store)
        r = client.get("/api/admin/users", headers=_auth(admin))
        assert r.status_code == 200
        rows = {u["email"]: u for u in r.json()}
        assert rows["m@x.com"]["subscription"]["status"] == "active"
        assert rows["admin@x.com"]["subscription"] is None

    def test_cannot_remove_own_admin(self, client, store):
        admin = store.create_user(email="admin@x.com", is_admin=True)
        r = client.put(f"/api/admin/users/{admin.id}", json={"isAdmin": False}, headers=_auth(admin))
        assert r.status_code == 400

    def test_manual_subscription_grants_role(self, client, store, guild):
        admin = store.create_user(email="admin@x.com", is_admin=True)
        guild.members.add("d42")
        target = store.create_user(email="friend@x.com", discord_id="d42")
        r = client.put(
            f"/api/admin/users/{target.id}", json={"hasManualSubscription": True}, headers=_auth(admin)
        )
        assert r.status_code == 200
        assert r.json()["hasManualSubscription"] is True
        assert "d42" in guild.roles

    def test_config_roundtrip(self, client, store):
        admin = store.create_user(email="admin@x.com", is_admin=True)
        r = client.put(
            "/api/admin/config/grace_period_days", json={"value": "3", "description": "days"}, headers=_auth(admin)
        )
        assert r.status_code == 200
        listed = client.get("/api/admin/config", headers=_auth(admin)).json()
        assert [(c["key"], c["value"]) for c in listed] == [("grace_period_days", "3")]


class TestDeniedLoginRoutes:
    def test_lapsed_password_login_gets_no_token(self, client, store):
        _lapsed(store)
        r = client.post("/api/auth/login", json={"email": "old@x.com", "password": "correct-horse"})
        assert r.status_code == 403
        body = r.json()
        assert body["reason"] == "expired"
        assert "token" not in body

    def test_me_withholds_token_once_access_is_gone(self, client, store):
        user = _lapsed(store)
        r = client.get("/api/auth/me", headers=_auth(user))
        assert r.status_code == 200
        body = r.json()
        assert body["canAccess"] is False
        assert body["accessReason"] == "expired"
        assert body["token"] is None

    def test_discord_callback_denied(self, make_client, store):
        _lapsed(store)
        client = make_client(oauth=FakeOAuth(DiscordProfile(id="d3", username="old")))
        r = client.get("/api/auth/discord/callback", params={"code": "abc"}, follow_redirects=False)
        assert r.status_code == 302
        assert r.headers["location"] == "https://portal.test?error=auth_failed&reason=expired"

    def test_discord_post_denied(self, make_client, store):
        _lapsed(store)
        client = make_client(oauth=FakeOAuth(DiscordProfile(id="d3", username="old")))
        r = client.post("/api/auth/discord", json={"code": "abc"})
        assert r.status_code == 403
        assert "token" not in r.json()


class TestCheckoutRoute:
    def test_anonymous_checkout(self, client, billing):
        r = client.post(
            "/api/payments/create-checkout-session", json={"email": "buyer@x.com", "discordId": "d77"}
        )
        assert r.status_code == 200
        assert r.json() == {"sessionId": "cs_new", "url": "https://checkout.test/cs_new"}
        assert billing.calls[-1][-1] == {"email": "buyer@x.com", "discordId": "d77"}

    def test_signed_in_checkout_carries_user_id(self, client, billing, store):
        user = _lapsed(store)
        r = client.post("/api/payments/create-checkout-session", json={}, headers=_auth(user))
        assert r.status_code == 200
        metadata = billing.calls[-1][-1]
        assert metadata["userId"] == user.id
        assert metadata["discordId"] == "d3"

    def test_bad_token_is_treated_as_anonymous(self, client, billing):
        r = client.post(
            "/api/payments/create-checkout-session",
            json={"email": "buyer@x.com"},
            headers={"Authorization": "Bearer junk"},
        )
        assert r.status_code == 200
        assert "userId" not in billing.calls[-1][-1]

    def test_anonymous_checkout_needs_email(self, client, billing):
        r = client.post("/api/payments/create-checkout-session", json={"discordId": "d77"})
        assert r.status_code == 400
        assert r.json()["reason"] == "email_required"
        assert billing.calls == []

    def test_unknown_plan(self, client):
        r = client.post("/api/payments/create-checkout-session", json={"plan": "yearly", "email": "b@x.com"})
        assert r.status_code == 422

    def test_price_not_configured(self, make_client):
        client = make_client(STRIPE_PRICE_ID_MONTHLY=None)
        r = client.post("/api/payments/create-checkout-session", json={"email": "b@x.com"})
        assert r.status_code == 503
