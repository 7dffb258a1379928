"""User resolution for every entry path (Discord OAuth, payment, codes, sessions).

Lookups are tried in a fixed order and the first hit wins:

1. owner of the local Subscription for a known billing subscription id
2. explicit user id (an authenticated caller) or a live one-time code
3. Discord id
4. payment / contact email

Only when all of them miss is a new User created, and only when the signal
carries an email or a Discord id. A unique-key collision during creation means
a concurrent request got there first: re-run the chain and adopt its record.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from portal.adapters.discord import DiscordProfile
from portal.core.errors import ConflictError, DuplicateRecordError, IdentityAmbiguousError
from portal.data.records import User
from portal.data.store import IdentityStore, normalize_email, to_utc, utcnow

log = logging.getLogger("identity")


@dataclass
class IdentitySignal:
    discord: Optional[DiscordProfile] = None
    billing_subscription_id: Optional[str] = None
    billing_customer_id: Optional[str] = None
    email: Optional[str] = None
    user_id: Optional[str] = None
    verification_code: Optional[str] = None

    @property
    def discord_id(self) -> Optional[str]:
        return self.discord.id if self.discord else None

    def emails(self) -> List[str]:
        out: List[str] = []
        for e in (self.email, self.discord.email if self.discord else None):
            e = normalize_email(e)
            if e and e not in out:
                out.append(e)
        return out


Lookup = Callable[[IdentityStore, IdentitySignal], Optional[User]]


def by_subscription_owner(store: IdentityStore, signal: IdentitySignal) -> Optional[User]:
    sub = store.get_subscription_by_billing_id(signal.billing_subscription_id)
    return store.get_user(sub.user_id) if sub else None


def by_user_id(store: IdentityStore, signal: IdentitySignal) -> Optional[User]:
    return store.get_user(signal.user_id)


def by_verification_code(store: IdentityStore, signal: IdentitySignal) -> Optional[User]:
    user = store.get_user_by_verification_code(signal.verification_code)
    if user is None:
        return None
    expires = to_utc(user.verification_code_expires_at)
    if expires is not None and expires < utcnow():
        return None
    return user


def by_discord_id(store: IdentityStore, signal: IdentitySignal) -> Optional[User]:
    return store.get_user_by_discord_id(signal.discord_id)


def by_email(store: IdentityStore, signal: IdentitySignal) -> Optional[User]:
    for email in signal.emails():
        user = store.get_user_by_email(email)
        if user:
            return user
    return None


LOOKUP_CHAIN: Sequence[Tuple[str, Lookup]] = (
    ("subscription_owner", by_subscription_owner),
    ("user_id", by_user_id),
    ("verification_code", by_verification_code),
    ("discord_id", by_discord_id),
    ("email", by_email),
)


def find_user(store: IdentityStore, signal: IdentitySignal) -> Optional[User]:
    for name, lookup in LOOKUP_CHAIN:
        user = lookup(store, signal)
        if user is not None:
            log.debug("identity.match via=%s user=%s", name, user.id)
            return user
    return None


def merge_discord_email(
    email: Optional[str], discord_email: Optional[str], observed: Optional[str]
) -> Tuple[Optional[str], Optional[str]]:
    """Return the (email, discord_email) pair after observing a Discord email.

    The primary email is anchored to the payment record and is only filled in
    when empty. Applying the merge again with the same input changes nothing.
    """
    email = normalize_email(email)
    discord_email = normalize_email(discord_email)
    observed = normalize_email(observed)
    if not observed:
        return email, discord_email
    if not email:
        return observed, observed
    return email, observed


def apply_discord_profile(store: IdentityStore, user: User, profile: DiscordProfile) -> User:
    """Attach/refresh Discord identity on an existing user."""
    email, discord_email = merge_discord_email(user.email, user.discord_email, profile.email)
    changes = {}
    if user.discord_id != profile.id:
        changes["discord_id"] = profile.id
    if profile.username and profile.username != user.username:
        changes["username"] = profile.username
    if profile.avatar and profile.avatar != user.avatar:
        changes["avatar"] = profile.avatar
    if email != user.email:
        changes["email"] = email
    if discord_email != user.discord_email:
        changes["discord_email"] = discord_email
    if not changes:
        return user
    try:
        return store.update_user(user.id, **changes) or user
    except DuplicateRecordError:
        pass
    # The Discord email already anchors another account; keep it secondary only
    if "email" in changes:
        changes.pop("email")
        try:
            return store.update_user(user.id, **changes) or user
        except DuplicateRecordError:
            pass
    log.warning("identity.discord_conflict user=%s discord=%s", user.id, profile.id)
    raise ConflictError(
        "This Discord account is already linked to another user.", reason="discord_already_linked"
    )


def _new_user_values(signal: IdentitySignal, **defaults) -> dict:
    values = dict(defaults)
    emails = signal.emails()
    payment_email = normalize_email(signal.email)
    if signal.discord:
        email, discord_email = merge_discord_email(payment_email, None, signal.discord.email)
        values.update(
            discord_id=signal.discord.id,
            username=signal.discord.username or values.get("username") or "",
            avatar=signal.discord.avatar,
            email=email,
            discord_email=discord_email,
        )
    else:
        values["email"] = emails[0] if emails else None
    return values


def resolve_user(
    store: IdentityStore, signal: IdentitySignal, *, create: bool = True, **defaults
) -> Tuple[Optional[User], bool]:
    """Find the user for ``signal``, creating one when nothing matches.

    Returns ``(user, created)``. Raises ``IdentityAmbiguousError`` when a user
    must be created but the signal has neither an email nor a Discord id.
    """
    user = find_user(store, signal)
    if user is not None or not create:
        return user, False

    if not signal.emails() and not signal.discord_id:
        raise IdentityAmbiguousError(
            "We could not identify your account. Sign in with Discord or use the email you paid with."
        )

    values = _new_user_values(signal, **defaults)
    try:
        user = store.create_user(**values)
    except DuplicateRecordError:
        adopted = find_user(store, signal)
        if adopted is None:
            raise
        log.info("identity.adopted user=%s (concurrent create)", adopted.id)
        return adopted, False
    log.info("identity.created user=%s discord=%s email=%s", user.id, user.discord_id, user.email)
    return user, True
