"""Access predicate and the caller-side access policy.

``can_access_portal`` looks at a Subscription and nothing else. The overrides
(admin, manual subscription, onboarding bypass) live in ``evaluate_access``
so the predicate stays pure.
"""
import datetime as dt
from dataclasses import dataclass, field
from typing import List, Optional

from portal.data.records import Subscription, User
from portal.data.store import to_utc

GRANTED_STATUSES = ("active", "trialing")


def grace_period_end(period_end: Optional[dt.datetime], grace_days: int) -> Optional[dt.datetime]:
    """Stored alongside the period at write time; never re-derived at check time."""
    end = to_utc(period_end)
    if end is None:
        return None
    return end + dt.timedelta(days=grace_days)


def can_access_portal(subscription: Optional[Subscription], now: Optional[dt.datetime] = None) -> bool:
    if subscription is None:
        return False
    if subscription.status in GRANTED_STATUSES:
        return True
    if subscription.status == "past_due":
        grace_end = to_utc(subscription.grace_period_end)
        if grace_end is None:
            return False
        now_dt = to_utc(now) or dt.datetime.now(dt.timezone.utc)
        return now_dt <= grace_end
    # unpaid, canceled, anything unknown
    return False


def is_in_onboarding(user: User, final_step: int) -> bool:
    return (
        not user.password_hash
        or not user.discord_id
        or (bool(user.onboarding_step) and user.onboarding_step < final_step)
    )


def setup_status(user: User) -> List[str]:
    missing = []
    if not user.password_hash:
        missing.append("password")
    if not user.discord_id:
        missing.append("discord")
    return missing


@dataclass(frozen=True)
class AccessPolicy:
    onboarding_final_step: int = 5
    onboarding_bypass: bool = True


@dataclass
class Verdict:
    granted: bool
    reason: str
    missing: List[str] = field(default_factory=list)


def subscription_denial_reason(subscription: Optional[Subscription]) -> str:
    if subscription is None:
        return "no_subscription"
    return "expired"


def evaluate_access(
    user: User,
    subscription: Optional[Subscription],
    now: Optional[dt.datetime] = None,
    policy: AccessPolicy = AccessPolicy(),
) -> Verdict:
    """Admin, then manual override, then onboarding bypass, then the predicate.

    The subscription is only consulted on the last step; callers that already
    know the user is privileged can pass ``None``.
    """
    if user.is_admin:
        return Verdict(True, "admin")
    if user.has_manual_subscription:
        return Verdict(True, "manual_subscription")
    if policy.onboarding_bypass and is_in_onboarding(user, policy.onboarding_final_step):
        return Verdict(True, "onboarding", missing=setup_status(user))
    if can_access_portal(subscription, now):
        return Verdict(True, "subscription")
    return Verdict(False, subscription_denial_reason(subscription))


def holds_community_role(
    user: User, subscription: Optional[Subscription], now: Optional[dt.datetime] = None
) -> bool:
    """Whether the paid community role belongs to this user. The onboarding bypass does not count."""
    return user.is_admin or user.has_manual_subscription or can_access_portal(subscription, now)


def needs_subscription_lookup(user: User, policy: AccessPolicy = AccessPolicy()) -> bool:
    """True when ``evaluate_access`` would reach the predicate for this user."""
    if user.is_admin or user.has_manual_subscription:
        return False
    if policy.onboarding_bypass and is_in_onboarding(user, policy.onboarding_final_step):
        return False
    return True
