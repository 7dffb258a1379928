import datetime as dt
import logging
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks

from portal.adapters.billing import remote_subscription_from_stripe
from portal.adapters.discord import DiscordProfile
from portal.data.records import MATERIALIZABLE_STATUSES, RemoteSubscription, User
from portal.services import mailer
from portal.services.access import can_access_portal, holds_community_role
from portal.services.cache import alock
from portal.services.engine import STEP_PAID, AccessEngine
from portal.services.identity import IdentitySignal, apply_discord_profile, find_user, resolve_user

log = logging.getLogger("stripe.webhook")

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENTS = ("invoice.payment_succeeded", "invoice.payment_failed")
CHECKOUT_EVENTS = ("checkout.session.completed",)
PAYMENT_INTENT_EVENTS = ("payment_intent.succeeded",)


def _ref(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub = _ref(invoice.get("subscription"))
    if sub:
        return sub
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


class WebhookProcessor:
    def __init__(self, engine: AccessEngine):
        self.engine = engine
        self.store = engine.store

    async def handle(self, event: Dict[str, Any], bg: BackgroundTasks | None = None) -> str:
        """Apply one verified billing event. Returns a short outcome label."""
        event_id = event.get("id")
        etype = event.get("type") or ""
        if event_id and not self.store.mark_event_processed(event_id):
            log.info("stripe.webhook duplicate event=%s id=%s", etype, event_id)
            return "duplicate"

        try:
            return await self._dispatch(etype, event, bg)
        except Exception:
            if event_id:
                self.store.forget_event(event_id)
            raise

    async def _dispatch(self, etype: str, event: Dict[str, Any], bg: BackgroundTasks | None) -> str:
        obj = (event.get("data") or {}).get("object") or {}
        email = None
        if etype in CHECKOUT_EVENTS:
            sub_id = _ref(obj.get("subscription"))
            email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
            remote = await self.engine.billing.retrieve_subscription(sub_id) if sub_id else None
            if remote is not None:
                remote.metadata = {**{str(k): str(v) for k, v in (obj.get("metadata") or {}).items()}, **remote.metadata}
        elif etype in SUBSCRIPTION_EVENTS:
            remote = remote_subscription_from_stripe(obj)
        elif etype in INVOICE_EVENTS:
            sub_id = _invoice_subscription_id(obj)
            email = obj.get("customer_email")
            remote = await self.engine.billing.retrieve_subscription(sub_id) if sub_id else None
        elif etype in PAYMENT_INTENT_EVENTS:
            email = obj.get("receipt_email")
            remote = await self._subscription_paid_by(obj)
        else:
            log.info("stripe.webhook ignored event=%s", etype)
            return "ignored"

        if remote is None:
            log.info("stripe.webhook event=%s no subscription attached", etype)
            return "ignored"
        return await self.apply(etype, remote, email=email, bg=bg)

    async def _subscription_paid_by(self, intent: Dict[str, Any]) -> Optional[RemoteSubscription]:
        """The customer subscription whose latest invoice this payment intent settled."""
        customer_id = _ref(intent.get("customer"))
        if not customer_id or not intent.get("id"):
            return None
        for remote in await self.engine.billing.find_subscriptions(customer_id=customer_id):
            if remote.latest_payment_intent == intent["id"]:
                return remote
        return None

    async def _locate_user(self, remote: RemoteSubscription, email: Optional[str]) -> Optional[User]:
        meta = remote.metadata
        signal = self._signal(remote, email)
        user = find_user(self.store, signal)
        if user is None and not signal.emails() and remote.customer_id:
            signal.email = await self.engine.billing.get_customer_email(remote.customer_id)
            user = find_user(self.store, signal)
        if user is None and remote.status in ("active", "trialing"):
            if not signal.emails() and not signal.discord_id:
                return None
            async with alock(f"payment:{remote.id}"):
                user, created = resolve_user(
                    self.store,
                    signal,
                    username=meta.get("username") or "",
                    onboarding_step=STEP_PAID,
                    is_whitelisted=True,
                )
            if created:
                log.info("stripe.webhook created payment-first user=%s sub=%s", user.id, remote.id)
        return user

    def _signal(self, remote: RemoteSubscription, email: Optional[str]) -> IdentitySignal:
        meta = remote.metadata
        discord = None
        if meta.get("discordId"):
            discord = DiscordProfile(id=meta["discordId"], username=meta.get("username") or "")
        return IdentitySignal(
            discord=discord,
            billing_subscription_id=remote.id,
            billing_customer_id=remote.customer_id,
            email=meta.get("email") or email,
            user_id=meta.get("userId"),
        )

    async def apply(
        self, etype: str, remote: RemoteSubscription, *, email: Optional[str] = None, bg: BackgroundTasks | None = None
    ) -> str:
        user = await self._locate_user(remote, email)
        if user is None:
            log.warning("stripe.webhook event=%s sub=%s unmatched status=%s", etype, remote.id, remote.status)
            return "unmatched"

        meta_discord = remote.metadata.get("discordId")
        if meta_discord and not user.discord_id and self.store.get_user_by_discord_id(meta_discord) is None:
            user = apply_discord_profile(self.store, user, DiscordProfile(id=meta_discord, username=user.username))

        if remote.status in MATERIALIZABLE_STATUSES:
            sub = await self.engine.sync.ensure_local_subscription(user.id, remote)
        else:
            # Unpaid or canceled remotes only update a record we already track
            sub = self.store.get_subscription_by_billing_id(remote.id)
            if sub is None:
                log.info(
                    "stripe.webhook event=%s sub=%s status=%s not tracked locally", etype, remote.id, remote.status
                )
                return "untracked"
            sub = self.engine.sync.mirror(sub, remote)
        if sub.user_id != user.id:
            user = self.store.get_user(sub.user_id) or user

        paid = remote.status in ("active", "trialing")
        changes: Dict[str, Any] = {}
        if user.subscription_id != sub.id and not self._holds_other_access(user):
            changes["subscription_id"] = sub.id
        if paid and not user.is_whitelisted:
            changes["is_whitelisted"] = True
        if paid and not user.onboarding_completed and (user.onboarding_step or 0) < STEP_PAID:
            changes["onboarding_step"] = STEP_PAID
        if changes:
            user = self.store.update_user(user.id, **changes) or user

        if paid and etype != "invoice.payment_failed":
            self._welcome(user, bg)
            if bg is not None:
                bg.add_task(self.engine.community.grant, user, None)
        elif etype == "customer.subscription.deleted" or remote.status == "canceled":
            current = user.subscription_id == sub.id
            if current and not holds_community_role(user, sub) and bg is not None:
                bg.add_task(self.engine.community.revoke, user)

        log.info(
            "stripe.webhook event=%s user=%s sub=%s status=%s", etype, user.id, remote.id, sub.status
        )
        return "applied"

    def _holds_other_access(self, user: User) -> bool:
        """True while the user's current subscription still passes the access predicate."""
        if not user.subscription_id:
            return False
        current = self.store.get_subscription(user.subscription_id)
        return current is not None and current.user_id == user.id and can_access_portal(current)

    def _welcome(self, user: User, bg: BackgroundTasks | None) -> None:
        """First payment only: a week-long code to sign in before a password exists."""
        if user.password_hash or user.verification_code or not user.email:
            return
        settings = self.engine.settings
        code = self.engine.issue_code(user, dt.timedelta(days=settings.WELCOME_CODE_TTL_DAYS))
        log.info("stripe.webhook welcome code issued user=%s", user.id)
        if bg is not None:
            bg.add_task(mailer.send_verification_code, settings, user.email, user.username, code, welcome=True)
