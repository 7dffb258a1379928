"""Mirror Billing Provider subscriptions into the Identity Store.

The remote side is the source of truth for status and period fields: any
field it returns overwrites the local copy. When the provider is unreachable
the last locally-known state is used instead.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from portal.adapters.billing import BillingProvider
from portal.core.errors import DuplicateRecordError, UpstreamUnavailableError
from portal.data.records import MATERIALIZABLE_STATUSES, RemoteSubscription, Subscription, User
from portal.data.store import IdentityStore, normalize_email
from portal.services.access import grace_period_end
from portal.services.cache import alock

log = logging.getLogger("billing.sync")


@dataclass
class BillingHints:
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    email: Optional[str] = None


def fields_from_remote(remote: RemoteSubscription, grace_days: int) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "status": remote.status,
        "plan": remote.plan,
        "cancel_at_period_end": remote.cancel_at_period_end,
    }
    if remote.customer_id:
        values["billing_customer_id"] = remote.customer_id
    if remote.current_period_start:
        values["current_period_start"] = remote.current_period_start
    if remote.current_period_end:
        values["current_period_end"] = remote.current_period_end
        values["grace_period_end"] = grace_period_end(remote.current_period_end, grace_days)
    if remote.canceled_at:
        values["canceled_at"] = remote.canceled_at
    return values


class SubscriptionSync:
    def __init__(self, store: IdentityStore, billing: Optional[BillingProvider], *, grace_days: int = 2):
        self.store = store
        self.billing = billing
        self.grace_days = grace_days

    def mirror(self, sub: Subscription, remote: RemoteSubscription) -> Subscription:
        updated = self.store.update_subscription(sub.id, **fields_from_remote(remote, self.grace_days))
        return updated or sub

    async def ensure_local_subscription(self, user_id: str, remote: RemoteSubscription) -> Subscription:
        """Return the single local record for ``remote``, creating it at most once."""
        async with alock(f"subscription:{remote.id}"):
            existing = self.store.get_subscription_by_billing_id(remote.id)
            if existing is not None:
                return self.mirror(existing, remote)
            try:
                sub = self.store.create_subscription(
                    user_id=user_id,
                    billing_subscription_id=remote.id,
                    **fields_from_remote(remote, self.grace_days),
                )
            except DuplicateRecordError:
                sub = self.store.get_subscription_by_billing_id(remote.id)
                if sub is None:
                    raise
                log.info("subscription.adopted sub=%s billing=%s", sub.id, remote.id)
                return sub
        log.info("subscription.created sub=%s billing=%s user=%s status=%s", sub.id, remote.id, user_id, sub.status)
        return sub

    def link_user(self, user: User, sub: Subscription) -> User:
        if user.subscription_id == sub.id:
            return user
        return self.store.update_user(user.id, subscription_id=sub.id) or user

    def _settle_owner(self, user: User, sub: Subscription) -> Tuple[User, Optional[Subscription]]:
        """The subscription's user_id wins over a stale user.subscription_id."""
        if sub.user_id == user.id:
            return user, sub
        owner = self.store.get_user(sub.user_id)
        if owner is not None and owner.subscription_id != sub.id:
            self.store.update_user(owner.id, subscription_id=sub.id)
        log.warning("subscription.owner_mismatch sub=%s owner=%s caller=%s", sub.id, sub.user_id, user.id)
        user = self.store.update_user(user.id, subscription_id=None) or user
        return user, None

    async def _refresh(self, sub: Subscription) -> Subscription:
        if self.billing is None:
            return sub
        try:
            remote = await self.billing.retrieve_subscription(sub.billing_subscription_id)
        except UpstreamUnavailableError:
            log.warning("subscription.refresh_skipped sub=%s (billing unreachable)", sub.id)
            return sub
        if remote is None:
            return sub
        return self.mirror(sub, remote)

    async def _candidates(self, user: User, hints: BillingHints) -> List[RemoteSubscription]:
        out: List[RemoteSubscription] = []
        if hints.subscription_id:
            remote = await self.billing.retrieve_subscription(hints.subscription_id)
            if remote is not None:
                out.append(remote)
        emails: List[str] = []
        for e in (hints.email, user.email, user.discord_email):
            e = normalize_email(e)
            if e and e not in emails:
                emails.append(e)
        for e in emails:
            out += await self.billing.find_subscriptions(email=e)
        if user.discord_id or hints.customer_id:
            out += await self.billing.find_subscriptions(discord_id=user.discord_id, customer_id=hints.customer_id)
        seen = set()
        unique = []
        for r in out:
            if r.id not in seen:
                seen.add(r.id)
                unique.append(r)
        return unique

    async def find_remote(self, user: User, hints: Optional[BillingHints] = None) -> Optional[RemoteSubscription]:
        """First remote subscription in an accessible state that nobody else owns."""
        if self.billing is None:
            return None
        for remote in await self._candidates(user, hints or BillingHints()):
            if remote.status not in MATERIALIZABLE_STATUSES:
                continue
            local = self.store.get_subscription_by_billing_id(remote.id)
            if local is not None and local.user_id != user.id:
                continue
            return remote
        return None

    async def tag_remote(self, remote: RemoteSubscription, user: User) -> None:
        if remote.metadata.get("userId") == user.id or self.billing is None:
            return
        metadata = {**remote.metadata, "userId": user.id}
        if user.discord_id:
            metadata["discordId"] = user.discord_id
        if user.email:
            metadata["email"] = user.email
        try:
            await self.billing.update_subscription_metadata(remote.id, metadata)
        except UpstreamUnavailableError:
            log.warning("subscription.tag_skipped billing=%s user=%s", remote.id, user.id)

    async def reconcile_subscription(
        self, user: User, hints: Optional[BillingHints] = None
    ) -> Tuple[User, Optional[Subscription]]:
        sub = self.store.get_subscription(user.subscription_id) if user.subscription_id else None
        if sub is not None:
            user, sub = self._settle_owner(user, sub)
        if sub is None:
            sub = self.store.get_subscription_by_user(user.id)

        if sub is not None:
            sub = await self._refresh(sub)
            user = self.link_user(user, sub)
            if sub.status in MATERIALIZABLE_STATUSES:
                return user, sub

        try:
            remote = await self.find_remote(user, hints)
        except UpstreamUnavailableError:
            log.warning("subscription.search_skipped user=%s (billing unreachable)", user.id)
            return user, sub
        if remote is None:
            return user, sub

        found = await self.ensure_local_subscription(user.id, remote)
        if found.user_id != user.id:
            # Lost the race to another user's record for the same remote subscription
            return user, sub
        user = self.link_user(user, found)
        await self.tag_remote(remote, user)
        return user, found
