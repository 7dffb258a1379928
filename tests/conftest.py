import asyncio
import dataclasses
import datetime as dt
import json
import os
import tempfile
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import text

# portal.main builds a module-level app from the environment on import
_TMP = tempfile.mkdtemp(prefix="portal-tests-")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'import.db')}")
os.environ.pop("REDIS_URL", None)

from portal.core.config import Settings  # noqa: E402
from portal.core.errors import UpstreamUnavailableError  # noqa: E402
from portal.data.records import RemoteSubscription  # noqa: E402
from portal.data.schema import init_db  # noqa: E402
from portal.data.store import IdentityStore  # noqa: E402
from portal.db import build_engine  # noqa: E402
from portal.services import cache, mailer, rate_limit  # noqa: E402
from portal.services.community import CommunityAccess  # noqa: E402
from portal.services.engine import AccessEngine  # noqa: E402

UTC = dt.timezone.utc


def ts(year: int, month: int, day: int) -> dt.datetime:
    return dt.datetime(year, month, day, tzinfo=UTC)


class FakeBilling:
    """In-memory billing provider with Stripe-like customers and subscriptions."""

    def __init__(self):
        self.subscriptions: Dict[str, RemoteSubscription] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.last_checkout: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.unavailable = False
        self.delay = 0.0

    def add_subscription(
        self,
        sub_id: str,
        *,
        customer_id: str = "cus_1",
        email: Optional[str] = None,
        status: str = "active",
        period_end: dt.datetime = None,
        discord_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        payment_intent: Optional[str] = None,
    ) -> RemoteSubscription:
        end = period_end or dt.datetime.now(UTC) + dt.timedelta(days=30)
        customer = self.customers.setdefault(customer_id, {"email": email, "metadata": {}})
        if email:
            customer["email"] = email
        if discord_id:
            customer["metadata"]["discordId"] = discord_id
        remote = RemoteSubscription(
            id=sub_id,
            customer_id=customer_id,
            status=status,
            current_period_start=end - dt.timedelta(days=30),
            current_period_end=end,
            price_id="price_monthly",
            metadata=dict(metadata or {}),
            latest_payment_intent=payment_intent,
        )
        self.subscriptions[sub_id] = remote
        return remote

    async def _step(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise UpstreamUnavailableError("Payment service is unreachable. Please try again.")

    def _copy(self, remote: Optional[RemoteSubscription]) -> Optional[RemoteSubscription]:
        if remote is None:
            return None
        return dataclasses.replace(remote, metadata=dict(remote.metadata))

    async def retrieve_subscription(self, subscription_id):
        await self._step("retrieve_subscription", subscription_id)
        return self._copy(self.subscriptions.get(subscription_id))

    async def find_subscriptions(self, *, email=None, discord_id=None, customer_id=None):
        await self._step("find_subscriptions", email, discord_id, customer_id)
        wanted = set()
        for cid, cust in self.customers.items():
            if customer_id and cid == customer_id:
                wanted.add(cid)
            if email and (cust.get("email") or "").lower() == email.lower():
                wanted.add(cid)
            if discord_id and cust["metadata"].get("discordId") == discord_id:
                wanted.add(cid)
        return [self._copy(s) for s in self.subscriptions.values() if s.customer_id in wanted]

    async def get_customer_email(self, customer_id):
        await self._step("get_customer_email", customer_id)
        return (self.customers.get(customer_id) or {}).get("email")

    async def retrieve_checkout_session(self, session_id):
        await self._step("retrieve_checkout_session", session_id)
        return dict(self.checkout_sessions[session_id])

    async def create_checkout_session(
        self, price_id, success_url, cancel_url, *, customer_id=None, email=None, client_reference_id=None, metadata=None
    ):
        await self._step("create_checkout_session", price_id, customer_id, email, client_reference_id, dict(metadata or {}))
        self.last_checkout = {"success_url": success_url, "cancel_url": cancel_url}
        return {"id": "cs_new", "url": "https://checkout.test/cs_new"}

    async def update_subscription_metadata(self, subscription_id, metadata):
        await self._step("update_subscription_metadata", subscription_id, dict(metadata))
        self.subscriptions[subscription_id].metadata = dict(metadata)

    async def cancel_subscription(self, subscription_id, at_period_end=True):
        await self._step("cancel_subscription", subscription_id, at_period_end)
        remote = self.subscriptions[subscription_id]
        if at_period_end:
            remote.cancel_at_period_end = True
        else:
            remote.status = "canceled"
            remote.canceled_at = dt.datetime.now(UTC)
        return self._copy(remote)

    async def create_refund(self, payment_intent_id, amount, reason, metadata):
        await self._step("create_refund", payment_intent_id, amount, reason, dict(metadata))
        return {"id": "re_1", "amount": amount or 2900, "status": "succeeded", "reason": reason}

    async def create_portal_session(self, customer_id, return_url, configuration=None):
        await self._step("create_portal_session", customer_id, return_url)
        return f"https://billing.test/session/{customer_id}"

    def construct_event(self, payload, signature, secret):
        if signature != "valid":
            raise ValueError("No signatures found matching the expected signature for payload")
        return json.loads(payload)


class FakeCommunity:
    """Discord guild stand-in tracking members and paid-role holders."""

    def __init__(self, members=(), roles=()):
        self.members = set(members)
        self.roles = set(roles)
        self.calls: List[tuple] = []
        self.delay = 0.0
        self.fail = False

    async def _step(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("discord unavailable")

    async def is_member(self, discord_id):
        await self._step("is_member", discord_id)
        return discord_id in self.members

    async def has_role(self, discord_id):
        await self._step("has_role", discord_id)
        return discord_id in self.roles

    async def add_member(self, discord_id, access_token):
        await self._step("add_member", discord_id, access_token)
        self.members.add(discord_id)
        self.roles.add(discord_id)
        return True

    async def add_role(self, discord_id):
        await self._step("add_role", discord_id)
        self.roles.add(discord_id)
        return True

    async def remove_role(self, discord_id):
        await self._step("remove_role", discord_id)
        had = discord_id in self.roles
        self.roles.discard(discord_id)
        return had


@pytest.fixture(autouse=True)
def reset_process_state(tmp_path, monkeypatch):
    cache.reset_local_state()
    rate_limit.reset()
    monkeypatch.setattr(mailer, "OUTBOX_DIR", tmp_path / "outbox")
    yield
    cache.reset_local_state()
    rate_limit.reset()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        JWT_SECRET="test-secret",
        DATABASE_URL=f"sqlite:///{tmp_path / 'portal.db'}",
        FRONTEND_URL="https://portal.test",
        STRIPE_SECRET_KEY="sk_test_fake",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_ID_MONTHLY="price_monthly",
        COMMUNITY_TIMEOUT_S=0.2,
        COMMUNITY_RETRIES=1,
    )


@pytest.fixture
def store(settings):
    engine = build_engine(settings.DATABASE_URL)
    init_db(engine)
    yield IdentityStore(engine)
    engine.dispose()


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def guild():
    return FakeCommunity()


@pytest.fixture
def engine(store, settings, billing, guild):
    community = CommunityAccess(
        guild, timeout_s=settings.COMMUNITY_TIMEOUT_S, retries=settings.COMMUNITY_RETRIES
    )
    return AccessEngine(store, settings, billing=billing, community=community)


def count_rows(store: IdentityStore, table: str) -> int:
    with store.engine.begin() as conn:
        return int(conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar())
