"""Request Gate: bearer credential -> current user -> access policy.

Runs on every protected request. The user is re-read from the store each time
and a missing user fails closed. Admins never reach the subscription
predicate; the subscription row is only loaded when the policy needs it.
"""
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from jwt import InvalidTokenError

from portal.core.errors import AccessDeniedError, InvalidCredentialsError
from portal.data.records import Subscription, User
from portal.data.store import IdentityStore
from portal.services.access import AccessPolicy, Verdict, evaluate_access, needs_subscription_lookup, setup_status
from portal.services.sessions import verify_bearer_token

log = logging.getLogger("gate")

_DENIAL_MESSAGES = {
    "no_subscription": "An active subscription is required to access the portal.",
    "expired": "Your subscription has expired. Please renew to continue accessing the portal.",
}


@dataclass
class GateContext:
    user: User
    claims: Dict[str, Any]
    verdict: Verdict


def current_subscription(store: IdentityStore, user: User) -> Optional[Subscription]:
    sub = store.get_subscription(user.subscription_id) if user.subscription_id else None
    if sub is None or sub.user_id != user.id:
        sub = store.get_subscription_by_user(user.id)
    return sub


def authenticate(store: IdentityStore, authorization: Optional[str], secret: str) -> tuple[User, Dict[str, Any]]:
    try:
        claims = verify_bearer_token(authorization, secret)
    except InvalidTokenError as e:
        raise InvalidCredentialsError("Invalid or expired token", reason="invalid_token") from e
    user = store.get_user(claims.get("userId"))
    if user is None:
        raise InvalidCredentialsError("User not found", reason="user_not_found")
    return user, claims


def access_denied(verdict: Verdict) -> AccessDeniedError:
    return AccessDeniedError(_DENIAL_MESSAGES.get(verdict.reason), reason=verdict.reason)


def authorize_request(
    store: IdentityStore,
    authorization: Optional[str],
    secret: str,
    policy: AccessPolicy = AccessPolicy(),
    now: Optional[dt.datetime] = None,
) -> GateContext:
    user, claims = authenticate(store, authorization, secret)
    sub = current_subscription(store, user) if needs_subscription_lookup(user, policy) else None
    verdict = evaluate_access(user, sub, now=now, policy=policy)
    if not verdict.granted:
        log.info("gate.denied user=%s reason=%s", user.id, verdict.reason)
        raise access_denied(verdict)
    return GateContext(user=user, claims=claims, verdict=verdict)


def setup_report(user: User) -> Dict[str, Any]:
    missing = setup_status(user)
    return {
        "setupComplete": not missing,
        "missingItems": missing,
        "needsPassword": "password" in missing,
        "needsDiscord": "discord" in missing,
    }


def check_setup_complete(user: User) -> None:
    """Advisory: raise a 403 naming what is still missing (password, discord)."""
    report = setup_report(user)
    if report["setupComplete"]:
        return
    raise AccessDeniedError(
        "Please complete your account setup to access this resource.",
        reason="setup_incomplete",
        missingItems=report["missingItems"],
        needsPassword=report["needsPassword"],
        needsDiscord=report["needsDiscord"],
    )
