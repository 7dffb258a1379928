"""Billing Provider adapter (Stripe).

The Stripe SDK is synchronous; every call runs in the threadpool under a
bounded timeout with a single retry on connection trouble, so the event loop
never blocks on billing I/O. Callers get ``RemoteSubscription`` records, not
SDK objects.
"""
import asyncio
import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import stripe
from starlette.concurrency import run_in_threadpool

from portal.core.errors import UpstreamUnavailableError
from portal.data.records import RemoteSubscription

log = logging.getLogger("billing")

# Remote statuses collapse onto the five local ones
_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "unpaid",
    "canceled": "canceled",
    "incomplete": "unpaid",
    "incomplete_expired": "canceled",
    "paused": "unpaid",
}


class BillingProvider(Protocol):
    async def retrieve_subscription(self, subscription_id: str) -> Optional[RemoteSubscription]: ...

    async def find_subscriptions(
        self, *, email: Optional[str] = None, discord_id: Optional[str] = None, customer_id: Optional[str] = None
    ) -> List[RemoteSubscription]: ...

    async def get_customer_email(self, customer_id: str) -> Optional[str]: ...

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]: ...

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        *,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
        client_reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]: ...

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> None: ...

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> Optional[RemoteSubscription]: ...

    async def create_refund(
        self, payment_intent_id: str, amount: Optional[int], reason: Optional[str], metadata: Dict[str, str]
    ) -> Dict[str, Any]: ...

    async def create_portal_session(self, customer_id: str, return_url: str) -> str: ...

    def construct_event(self, payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]: ...


# --- helpers for Stripe timestamps/subscription periods ---
def _to_utc_dt_from_unix(ts: int | str | None) -> dt.datetime | None:
    try:
        if ts is None:
            return None
        # Stripe uses unix seconds; tolerate strings
        val = int(ts)
        if val <= 0:
            return None
        return dt.datetime.fromtimestamp(val, tz=dt.timezone.utc)
    except (TypeError, ValueError):
        return None


def plain(obj: Any) -> Dict[str, Any]:
    """SDK object -> plain dict (works across stripe-python versions)."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    for attr in ("to_dict", "to_dict_recursive"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


def _first_item(sub: Dict[str, Any]) -> Dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return (items[0] if items else {}) or {}


def _derive_period(sub: Dict[str, Any]) -> tuple[dt.datetime | None, dt.datetime | None]:
    """Best-effort current period for a Stripe subscription.

    Newer API versions carry the period on the subscription items; trial
    subscriptions may only carry trial_end.
    """
    item = _first_item(sub)
    start = _to_utc_dt_from_unix(sub.get("current_period_start")) or _to_utc_dt_from_unix(
        item.get("current_period_start")
    )
    end = _to_utc_dt_from_unix(sub.get("current_period_end")) or _to_utc_dt_from_unix(
        item.get("current_period_end")
    )
    if end is None:
        end = _to_utc_dt_from_unix(sub.get("trial_end"))
    return start, end


def _interval_to_plan(interval: str | None) -> str:
    if interval == "month":
        return "monthly"
    if interval == "year":
        return "yearly"
    return interval or "monthly"


def _latest_payment_intent(sub: Dict[str, Any]) -> Optional[str]:
    invoice = sub.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    intent = invoice.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent or None


def remote_subscription_from_stripe(obj: Any) -> RemoteSubscription:
    sub = plain(obj)
    start, end = _derive_period(sub)
    price = _first_item(sub).get("price") or {}
    customer = sub.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    raw_status = sub.get("status") or ""
    return RemoteSubscription(
        id=sub.get("id") or "",
        customer_id=customer,
        status=_STATUS_MAP.get(raw_status, "unpaid"),
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        canceled_at=_to_utc_dt_from_unix(sub.get("canceled_at")),
        price_id=price.get("id"),
        plan=_interval_to_plan((price.get("recurring") or {}).get("interval")),
        metadata={str(k): str(v) for k, v in (sub.get("metadata") or {}).items()},
        latest_payment_intent=_latest_payment_intent(sub),
    )


def _list_data(result: Any) -> List[Any]:
    data = getattr(result, "data", None)
    if data is None:
        data = plain(result).get("data")
    return list(data or [])


def _is_missing(e: Exception) -> bool:
    return isinstance(e, stripe.InvalidRequestError) and getattr(e, "code", None) == "resource_missing"


class StripeBilling:
    def __init__(self, secret_key: str, *, timeout_s: float = 10.0, retries: int = 1):
        self._client = stripe.StripeClient(secret_key)
        self._timeout = timeout_s
        self._retries = max(0, retries)

    async def _call(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(run_in_threadpool(fn, *args, **kwargs), timeout=self._timeout)
            except (asyncio.TimeoutError, stripe.APIConnectionError, stripe.RateLimitError) as e:
                if attempt < self._retries:
                    attempt += 1
                    log.warning("billing.retry op=%s attempt=%d error=%s", op, attempt, type(e).__name__)
                    continue
                log.error("billing.unreachable op=%s error=%s", op, type(e).__name__)
                raise UpstreamUnavailableError("Payment service is unreachable. Please try again.") from e
            except stripe.AuthenticationError as e:
                log.error("billing.not_configured op=%s", op)
                raise UpstreamUnavailableError("Payment service is not configured. Please contact support.") from e

    async def retrieve_subscription(self, subscription_id: str) -> Optional[RemoteSubscription]:
        try:
            obj = await self._call("subscriptions.retrieve", self._client.subscriptions.retrieve, subscription_id)
        except stripe.InvalidRequestError as e:
            if _is_missing(e):
                return None
            raise
        return remote_subscription_from_stripe(obj)

    async def _subscriptions_for_customer(self, customer_id: str) -> List[RemoteSubscription]:
        res = await self._call(
            "subscriptions.list",
            self._client.subscriptions.list,
            params={"customer": customer_id, "status": "all", "limit": 20, "expand": ["data.latest_invoice"]},
        )
        return [remote_subscription_from_stripe(s) for s in _list_data(res)]

    async def find_subscriptions(
        self, *, email: Optional[str] = None, discord_id: Optional[str] = None, customer_id: Optional[str] = None
    ) -> List[RemoteSubscription]:
        customer_ids: List[str] = []
        if customer_id:
            customer_ids.append(customer_id)
        if email:
            res = await self._call("customers.list", self._client.customers.list, params={"email": email, "limit": 10})
            customer_ids += [plain(c).get("id") for c in _list_data(res)]
        if discord_id:
            res = await self._call(
                "customers.search",
                self._client.customers.search,
                params={"query": f"metadata['discordId']:'{discord_id}'", "limit": 10},
            )
            customer_ids += [plain(c).get("id") for c in _list_data(res)]
        seen: set[str] = set()
        out: List[RemoteSubscription] = []
        for cid in customer_ids:
            if not cid or cid in seen:
                continue
            seen.add(cid)
            out += await self._subscriptions_for_customer(cid)
        return out

    async def get_customer_email(self, customer_id: str) -> Optional[str]:
        try:
            cust = plain(await self._call("customers.retrieve", self._client.customers.retrieve, customer_id))
        except stripe.InvalidRequestError as e:
            if _is_missing(e):
                return None
            raise
        if cust.get("deleted"):
            return None
        return cust.get("email")

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        session = plain(
            await self._call("checkout.sessions.retrieve", self._client.checkout.sessions.retrieve, session_id)
        )
        subscription = session.get("subscription")
        customer = session.get("customer")
        return {
            "subscription_id": subscription.get("id") if isinstance(subscription, dict) else subscription,
            "customer_id": customer.get("id") if isinstance(customer, dict) else customer,
            "email": (session.get("customer_details") or {}).get("email") or session.get("customer_email"),
            "metadata": session.get("metadata") or {},
        }

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        *,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
        client_reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Subscription-mode checkout; metadata lands on both the session and the subscription."""
        meta = dict(metadata or {})
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": meta,
            "subscription_data": {"metadata": meta},
        }
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email
        session = plain(
            await self._call("checkout.sessions.create", self._client.checkout.sessions.create, params=params)
        )
        return {"id": session.get("id"), "url": session.get("url")}

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> None:
        await self._call(
            "subscriptions.update",
            self._client.subscriptions.update,
            subscription_id,
            params={"metadata": metadata},
        )

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> Optional[RemoteSubscription]:
        if at_period_end:
            obj = await self._call(
                "subscriptions.update",
                self._client.subscriptions.update,
                subscription_id,
                params={"cancel_at_period_end": True},
            )
        else:
            obj = await self._call("subscriptions.cancel", self._client.subscriptions.cancel, subscription_id)
        return remote_subscription_from_stripe(obj)

    async def create_refund(
        self, payment_intent_id: str, amount: Optional[int], reason: Optional[str], metadata: Dict[str, str]
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "metadata": {**metadata, "refundedVia": "rainmakers-portal-admin"},
        }
        if amount:
            params["amount"] = amount
        if reason:
            params["reason"] = reason
        refund = plain(await self._call("refunds.create", self._client.refunds.create, params=params))
        return {
            "id": refund.get("id"),
            "amount": refund.get("amount"),
            "status": refund.get("status"),
            "reason": refund.get("reason"),
        }

    async def create_portal_session(self, customer_id: str, return_url: str, configuration: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"customer": customer_id, "return_url": return_url}
        if configuration:
            params["configuration"] = configuration
        ps = plain(
            await self._call("billing_portal.sessions.create", self._client.billing_portal.sessions.create, params=params)
        )
        return ps["url"]

    def construct_event(self, payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
        """Raises ``ValueError`` / ``stripe.SignatureVerificationError`` on bad input."""
        event = self._client.construct_event(payload.decode("utf-8"), signature or "", secret)
        return plain(event)
