import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due", "unpaid", "canceled")
# Statuses a remote subscription may be in and still be materialised locally
MATERIALIZABLE_STATUSES = ("active", "trialing", "past_due")


@dataclass
class User:
    id: str
    email: Optional[str] = None
    discord_email: Optional[str] = None
    username: str = ""
    discord_id: Optional[str] = None
    avatar: Optional[str] = None
    password_hash: Optional[str] = None
    is_admin: bool = False
    is_whitelisted: bool = False
    has_manual_subscription: bool = False
    subscription_id: Optional[str] = None
    terms_accepted: bool = False
    terms_accepted_at: Optional[dt.datetime] = None
    onboarding_step: int = 0
    onboarding_completed: bool = False
    verification_code: Optional[str] = None
    verification_code_expires_at: Optional[dt.datetime] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def public(self) -> Dict[str, Any]:
        """Shape returned to the frontend; never includes secrets."""
        return {
            "id": self.id,
            "discordId": self.discord_id,
            "username": self.username,
            "email": self.email,
            "discordEmail": self.discord_email,
            "avatar": self.avatar,
            "isAdmin": self.is_admin,
            "isWhitelisted": self.is_whitelisted,
            "hasManualSubscription": self.has_manual_subscription,
            "termsAccepted": self.terms_accepted,
            "onboardingStep": self.onboarding_step,
            "onboardingCompleted": self.onboarding_completed,
            "hasPassword": bool(self.password_hash),
        }


@dataclass
class Subscription:
    id: str
    user_id: str
    billing_customer_id: Optional[str]
    billing_subscription_id: str
    status: str
    plan: str = "monthly"
    current_period_start: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[dt.datetime] = None
    grace_period_end: Optional[dt.datetime] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def public(self) -> Dict[str, Any]:
        def _iso(v: Optional[dt.datetime]) -> Optional[str]:
            return v.isoformat() if v else None

        return {
            "id": self.id,
            "status": self.status,
            "plan": self.plan,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": _iso(self.canceled_at),
            "gracePeriodEnd": _iso(self.grace_period_end),
        }


@dataclass
class TermsAcceptance:
    user_id: str
    terms_version: str
    terms_version_date: str
    content_hash: str
    acceptance_method: str
    email: Optional[str] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    accepted_at: Optional[dt.datetime] = None
    id: Optional[str] = None


@dataclass
class ConfigEntry:
    key: str
    value: str
    description: Optional[str] = None
    updated_at: Optional[dt.datetime] = None


@dataclass
class RemoteSubscription:
    """Billing Provider view of a subscription, normalised away from SDK objects."""

    id: str
    customer_id: Optional[str]
    status: str
    current_period_start: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[dt.datetime] = None
    price_id: Optional[str] = None
    plan: str = "monthly"
    metadata: Dict[str, str] = field(default_factory=dict)
    # Payment intent of the latest invoice, when Stripe expanded it
    latest_payment_intent: Optional[str] = None
