"""Access Decision Engine.

One object per process, built in ``portal.main`` with its collaborators
injected (store, billing client, community access, OAuth client). Every login
entry point goes through the same steps: resolve the user, reconcile the
subscription, evaluate access, issue a session, then schedule the community
side effect in the background. A denied verdict raises ``AccessDeniedError``
and no session is issued. The paid role is only granted to users who hold it
on their own terms (admin, manual override or a qualifying subscription), never
through the onboarding bypass.
"""
import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import BackgroundTasks

from portal.adapters.billing import BillingProvider
from portal.adapters.discord import DiscordOAuth, DiscordProfile
from portal.core.config import Settings
from portal.core.errors import (
    AccessDeniedError,
    ConflictError,
    DuplicateRecordError,
    IdentityAmbiguousError,
    InvalidCredentialsError,
    NotFoundError,
    UpstreamUnavailableError,
)
from portal.data.records import MATERIALIZABLE_STATUSES, RemoteSubscription, Subscription, User
from portal.data.store import IdentityStore, normalize_email, utcnow
from portal.services import mailer
from portal.services.access import AccessPolicy, Verdict, can_access_portal, evaluate_access, holds_community_role
from portal.services.billing_sync import BillingHints, SubscriptionSync, fields_from_remote
from portal.services.cache import alock
from portal.services.community import CommunityAccess
from portal.services.credentials import generate_verification_code, hash_password, verify_password
from portal.services.gate import access_denied
from portal.services.identity import IdentitySignal, apply_discord_profile, find_user, resolve_user
from portal.services.sessions import issue_session

log = logging.getLogger("engine")

# Onboarding markers: payment done, password set
STEP_PAID = 2
STEP_PASSWORD = 3


@dataclass
class LoginOutcome:
    user: User
    subscription: Optional[Subscription]
    verdict: Verdict
    token: str
    needs_discord_oauth: bool = False
    created: bool = False

    def body(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "user": self.user.public(),
            "subscription": self.subscription.public() if self.subscription else None,
            "canAccess": self.verdict.granted,
            "accessReason": self.verdict.reason,
            "missingItems": list(self.verdict.missing),
            "needsDiscordOAuth": self.needs_discord_oauth,
        }


@dataclass
class CancelResult:
    subscription: Subscription
    immediate: bool
    message: str = ""


@dataclass
class RefundResult:
    refund: Dict[str, Any]
    canceled: List[str] = field(default_factory=list)


class AccessEngine:
    def __init__(
        self,
        store: IdentityStore,
        settings: Settings,
        *,
        billing: Optional[BillingProvider] = None,
        community: Optional[CommunityAccess] = None,
        oauth: Optional[DiscordOAuth] = None,
    ):
        self.store = store
        self.settings = settings
        self.billing = billing
        self.community = community or CommunityAccess(None)
        self.oauth = oauth
        self.sync = SubscriptionSync(store, billing, grace_days=settings.GRACE_PERIOD_DAYS)
        self.policy = AccessPolicy(
            onboarding_final_step=settings.ONBOARDING_FINAL_STEP,
            onboarding_bypass=settings.ONBOARDING_BYPASS,
        )

    # ---- shared steps ----

    @property
    def oauth_ttl(self) -> dt.timedelta:
        return dt.timedelta(hours=self.settings.SESSION_TTL_OAUTH_HOURS)

    @property
    def login_ttl(self) -> dt.timedelta:
        return dt.timedelta(hours=self.settings.SESSION_TTL_LOGIN_HOURS)

    def _require_billing(self) -> BillingProvider:
        if self.billing is None:
            raise UpstreamUnavailableError("Payment service is not configured.")
        return self.billing

    def _require_oauth(self) -> DiscordOAuth:
        if self.oauth is None:
            raise UpstreamUnavailableError("Discord login is not configured.")
        return self.oauth

    def verdict_for(self, user: User, subscription: Optional[Subscription], now: Optional[dt.datetime] = None) -> Verdict:
        return evaluate_access(user, subscription, now=now, policy=self.policy)

    async def _finish(
        self,
        user: User,
        subscription: Optional[Subscription],
        ttl: dt.timedelta,
        *,
        flow: str,
        bg: BackgroundTasks | None = None,
        join_token: Optional[str] = None,
        created: bool = False,
    ) -> LoginOutcome:
        verdict = self.verdict_for(user, subscription)
        if not verdict.granted:
            log.info("login.%s denied user=%s created=%s reason=%s", flow, user.id, created, verdict.reason)
            raise access_denied(verdict)
        needs_oauth = False
        if holds_community_role(user, subscription):
            needs_oauth = await self.community.needs_discord_oauth(user, join_token)
            if bg is not None and user.discord_id:
                bg.add_task(self.community.grant, user, join_token)
        token = issue_session(user, self.settings.JWT_SECRET, ttl)
        log.info(
            "login.%s user=%s created=%s verdict=%s reason=%s needs_oauth=%s",
            flow, user.id, created, verdict.granted, verdict.reason, needs_oauth,
        )
        return LoginOutcome(
            user=user,
            subscription=subscription,
            verdict=verdict,
            token=token,
            needs_discord_oauth=needs_oauth,
            created=created,
        )

    def _first_materializable(self, remotes: List[RemoteSubscription]) -> Optional[RemoteSubscription]:
        for r in remotes:
            if r.status in MATERIALIZABLE_STATUSES:
                return r
        return None

    async def _payment_hints(self, profile: DiscordProfile) -> BillingHints:
        """Billing references for a Discord profile nobody locally knows yet."""
        if self.billing is None:
            return BillingHints()
        try:
            remotes = await self.billing.find_subscriptions(
                email=normalize_email(profile.email), discord_id=profile.id
            )
            remote = self._first_materializable(remotes)
            if remote is None:
                return BillingHints()
            email = None
            if remote.customer_id:
                email = await self.billing.get_customer_email(remote.customer_id)
        except UpstreamUnavailableError:
            log.warning("login.discord billing lookup skipped discord=%s", profile.id)
            return BillingHints()
        return BillingHints(subscription_id=remote.id, customer_id=remote.customer_id, email=email)

    # ---- Discord ----

    async def login_with_discord(self, code: str, bg: BackgroundTasks | None = None) -> LoginOutcome:
        oauth = self._require_oauth()
        token = await oauth.exchange_code(code)
        profile = await oauth.get_profile(token.access_token)
        return await self.discord_login(profile, join_token=token.access_token if token.can_join else None, bg=bg)

    async def discord_login(
        self, profile: DiscordProfile, *, join_token: Optional[str] = None, bg: BackgroundTasks | None = None
    ) -> LoginOutcome:
        signal = IdentitySignal(discord=profile)
        hints = BillingHints()
        if find_user(self.store, signal) is None:
            hints = await self._payment_hints(profile)
            signal.billing_subscription_id = hints.subscription_id
            signal.billing_customer_id = hints.customer_id
            signal.email = hints.email
        user, created = resolve_user(self.store, signal)
        user = apply_discord_profile(self.store, user, profile)
        user, sub = await self.sync.reconcile_subscription(user, hints)
        return await self._finish(
            user, sub, self.oauth_ttl, flow="discord", bg=bg, join_token=join_token, created=created
        )

    async def link_discord(self, user: User, code: str, bg: BackgroundTasks | None = None) -> LoginOutcome:
        oauth = self._require_oauth()
        token = await oauth.exchange_code(code)
        profile = await oauth.get_profile(token.access_token)
        return await self.attach_discord(
            user, profile, join_token=token.access_token if token.can_join else None, bg=bg
        )

    async def attach_discord(
        self, user: User, profile: DiscordProfile, *, join_token: Optional[str] = None, bg: BackgroundTasks | None = None
    ) -> LoginOutcome:
        holder = self.store.get_user_by_discord_id(profile.id)
        if holder is not None and holder.id != user.id:
            raise ConflictError(
                "This Discord account is already linked to another user.", reason="discord_already_linked"
            )
        user = apply_discord_profile(self.store, user, profile)
        user, sub = await self.sync.reconcile_subscription(user)
        return await self._finish(user, sub, self.login_ttl, flow="link", bg=bg, join_token=join_token)

    async def disconnect_discord(self, user: User, bg: BackgroundTasks | None = None) -> User:
        if not user.discord_id:
            return user
        if bg is not None:
            bg.add_task(self.community.revoke, user)
        updated = self.store.update_user(user.id, discord_id=None, discord_email=None) or user
        log.info("discord.disconnect user=%s discord=%s", user.id, user.discord_id)
        return updated

    # ---- password and one-time codes ----

    async def login_with_password(self, email: str, password: str, bg: BackgroundTasks | None = None) -> LoginOutcome:
        user = self.store.get_user_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            log.info("login.password rejected email=%s", normalize_email(email))
            raise InvalidCredentialsError("Invalid email or password")
        user, sub = await self.sync.reconcile_subscription(user)
        return await self._finish(user, sub, self.login_ttl, flow="password", bg=bg)

    def set_password(self, user: User, password: str) -> User:
        changes: Dict[str, Any] = {"password_hash": hash_password(password)}
        if not user.onboarding_completed and (user.onboarding_step or 0) < STEP_PASSWORD:
            changes["onboarding_step"] = STEP_PASSWORD
        return self.store.update_user(user.id, **changes) or user

    def issue_code(self, user: User, ttl: dt.timedelta) -> str:
        expires = utcnow() + ttl
        for _ in range(5):
            code = generate_verification_code()
            try:
                self.store.update_user(user.id, verification_code=code, verification_code_expires_at=expires)
            except DuplicateRecordError:
                continue
            return code
        raise ConflictError("Could not allocate a verification code, please retry.")

    async def request_code(self, email: str, bg: BackgroundTasks | None = None) -> bool:
        """Email a login code. Unknown addresses are not revealed to the caller."""
        user = self.store.get_user_by_email(email)
        if user is None:
            log.info("code.request unknown email=%s", normalize_email(email))
            return False
        code = self.issue_code(user, dt.timedelta(minutes=self.settings.LOGIN_CODE_TTL_MINUTES))
        if bg is not None:
            bg.add_task(mailer.send_verification_code, self.settings, user.email, user.username, code, welcome=False)
        log.info("code.request user=%s", user.id)
        return True

    async def verify_code(self, code: str, bg: BackgroundTasks | None = None) -> LoginOutcome:
        user, _ = resolve_user(self.store, IdentitySignal(verification_code=code), create=False)
        if user is None:
            raise InvalidCredentialsError("Invalid or expired code", reason="invalid_code")
        # One-time use
        user = self.store.update_user(user.id, verification_code=None, verification_code_expires_at=None) or user
        user, sub = await self.sync.reconcile_subscription(user)
        return await self._finish(user, sub, self.login_ttl, flow="code", bg=bg)

    # ---- payment ----

    async def login_after_payment(
        self,
        *,
        session_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        email: Optional[str] = None,
        discord_id: Optional[str] = None,
        username: Optional[str] = None,
        bg: BackgroundTasks | None = None,
    ) -> LoginOutcome:
        billing = self._require_billing()
        customer_id = None
        metadata: Dict[str, str] = {}
        if session_id:
            checkout = await billing.retrieve_checkout_session(session_id)
            subscription_id = subscription_id or checkout.get("subscription_id")
            customer_id = checkout.get("customer_id")
            email = email or checkout.get("email")
            metadata = {str(k): str(v) for k, v in (checkout.get("metadata") or {}).items()}

        remote = None
        if subscription_id:
            remote = await billing.retrieve_subscription(subscription_id)
        if remote is None and (email or discord_id or customer_id):
            remote = self._first_materializable(
                await billing.find_subscriptions(
                    email=normalize_email(email), discord_id=discord_id, customer_id=customer_id
                )
            )
        if remote is None or remote.status not in MATERIALIZABLE_STATUSES:
            raise AccessDeniedError("No active subscription was found for this payment.", reason="no_subscription")

        metadata = {**remote.metadata, **metadata}
        if not email and remote.customer_id:
            email = await billing.get_customer_email(remote.customer_id)

        async with alock(f"payment:{remote.id}"):
            user, created = self._resolve_purchaser(remote, email, metadata, username)
            sub = await self.sync.ensure_local_subscription(user.id, remote)
            if sub.user_id != user.id:
                user = self.store.get_user(sub.user_id) or user
            changes: Dict[str, Any] = {}
            if user.subscription_id != sub.id:
                changes["subscription_id"] = sub.id
            if remote.status in ("active", "trialing") and not user.is_whitelisted:
                changes["is_whitelisted"] = True
            if not user.onboarding_completed and (user.onboarding_step or 0) < STEP_PAID:
                changes["onboarding_step"] = STEP_PAID
            if changes:
                user = self.store.update_user(user.id, **changes) or user
        await self.sync.tag_remote(remote, user)
        return await self._finish(user, sub, self.login_ttl, flow="payment", bg=bg, created=created)

    def _resolve_purchaser(
        self, remote: RemoteSubscription, email: Optional[str], metadata: Dict[str, str], username: Optional[str]
    ):
        # Only the checkout metadata is trusted for a Discord id at this point
        discord_id = metadata.get("discordId") or None
        profile = None
        if discord_id:
            profile = DiscordProfile(id=discord_id, username=username or metadata.get("username") or "")
        signal = IdentitySignal(
            discord=profile,
            billing_subscription_id=remote.id,
            billing_customer_id=remote.customer_id,
            email=email or metadata.get("email"),
            user_id=metadata.get("userId"),
        )
        user, created = resolve_user(
            self.store,
            signal,
            username=username or metadata.get("username") or "",
            onboarding_step=STEP_PAID,
            is_whitelisted=remote.status in ("active", "trialing"),
        )
        if profile is not None and not user.discord_id and self.store.get_user_by_discord_id(discord_id) is None:
            user = apply_discord_profile(self.store, user, profile)
        return user, created

    async def start_checkout(
        self,
        *,
        user: Optional[User] = None,
        email: Optional[str] = None,
        discord_id: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Checkout for the monthly plan, stamped with whatever identifies the buyer.

        A signed-in user's own ids win over anything in the request body.
        """
        billing = self._require_billing()
        price_id = self.settings.STRIPE_PRICE_ID_MONTHLY
        if not price_id:
            raise UpstreamUnavailableError("Stripe price ID not configured")

        metadata: Dict[str, str] = {}
        customer_id = None
        if user is not None:
            email = user.email or email
            username = user.username or username
            discord_id = user.discord_id
            metadata["userId"] = user.id
            sub = self._current_subscription(user)
            customer_id = sub.billing_customer_id if sub else None
        email = normalize_email(email)
        if user is None and not email:
            raise IdentityAmbiguousError(
                "Email is required for new users. Please provide your email address.", reason="email_required"
            )
        if email:
            metadata["email"] = email
        if discord_id:
            metadata["discordId"] = discord_id
        if username:
            metadata["username"] = username

        base = self.settings.frontend_base
        success = {"payment": "success", **{k: v for k, v in metadata.items() if k != "userId"}}
        session = await billing.create_checkout_session(
            price_id,
            f"{base}/payment-success?{urlencode(success)}&session_id={{CHECKOUT_SESSION_ID}}",
            f"{base}/join?payment=canceled",
            customer_id=customer_id,
            email=email,
            client_reference_id=user.id if user is not None else email,
            metadata=metadata,
        )
        log.info("checkout.created session=%s user=%s", session.get("id"), user.id if user else None)
        return {"sessionId": session.get("id"), "url": session.get("url")}

    async def subscription_status(self, user: User) -> Dict[str, Any]:
        user, sub = await self.sync.reconcile_subscription(user)
        if sub is None:
            return {"hasSubscription": False, "canAccess": False, "subscription": None}
        return {"hasSubscription": True, "canAccess": can_access_portal(sub), "subscription": sub.public()}

    def _current_subscription(self, user: User) -> Optional[Subscription]:
        sub = self.store.get_subscription(user.subscription_id) if user.subscription_id else None
        if sub is None or sub.user_id != user.id:
            sub = self.store.get_subscription_by_user(user.id)
        return sub

    async def cancel(self, user: User, at_period_end: bool = True, bg: BackgroundTasks | None = None) -> CancelResult:
        sub = self._current_subscription(user)
        if sub is None:
            raise NotFoundError("Subscription not found", reason="no_subscription")
        billing = self._require_billing()
        remote = await billing.cancel_subscription(sub.billing_subscription_id, at_period_end=at_period_end)
        if at_period_end:
            changes: Dict[str, Any] = {"cancel_at_period_end": True}
            if remote is not None:
                changes.update(fields_from_remote(remote, self.settings.GRACE_PERIOD_DAYS))
            sub = self.store.update_subscription(sub.id, **changes) or sub
            message = "Subscription will be canceled at the end of the billing period"
        else:
            sub = self.store.update_subscription(
                sub.id, status="canceled", canceled_at=utcnow(), cancel_at_period_end=False
            ) or sub
            if bg is not None:
                bg.add_task(self.community.revoke, user)
            message = "Subscription canceled immediately"
        log.info("subscription.cancel user=%s sub=%s immediate=%s", user.id, sub.id, not at_period_end)
        return CancelResult(subscription=sub, immediate=not at_period_end, message=message)

    async def customer_portal_url(self, user: User) -> str:
        sub = self._current_subscription(user)
        if sub is None or not sub.billing_customer_id:
            raise NotFoundError("Subscription not found", reason="no_subscription")
        billing = self._require_billing()
        return await billing.create_portal_session(
            sub.billing_customer_id,
            f"{self.settings.frontend_base}/settings",
            configuration=self.settings.STRIPE_PORTAL_CONFIGURATION_ID,
        )

    async def refund(
        self,
        admin: User,
        payment_intent_id: str,
        *,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        bg: BackgroundTasks | None = None,
    ) -> RefundResult:
        billing = self._require_billing()
        target = self.store.get_user(user_id) if user_id else None
        refund = await billing.create_refund(
            payment_intent_id,
            amount,
            reason,
            {
                **(metadata or {}),
                "refundedBy": admin.id,
                "refundedByUsername": admin.username,
                "userId": (target.id if target else user_id) or "unknown",
            },
        )
        result = RefundResult(refund=refund)
        sub = self._current_subscription(target) if target else None
        if sub is not None:
            await billing.cancel_subscription(sub.billing_subscription_id, at_period_end=False)
            self.store.update_subscription(sub.id, status="canceled", canceled_at=utcnow(), cancel_at_period_end=False)
            result.canceled.append(sub.id)
            if bg is not None:
                bg.add_task(self.community.revoke, target)
        log.info("payments.refund admin=%s user=%s refund=%s canceled=%s", admin.id, user_id, refund.get("id"), result.canceled)
        return result
