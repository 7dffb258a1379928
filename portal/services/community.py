"""Best-effort community (Discord) side effects.

Grant and revoke run as background tasks after the access verdict is already
decided. Each call is time-boxed per attempt, retried a bounded number of
times, and logs exactly one outcome line. Nothing here raises.
"""
import asyncio
import logging
from typing import Optional

from portal.adapters.discord import CommunityProvider
from portal.data.records import User
from portal.services.cache import aget, aset

log = logging.getLogger("community")

GRANTED = "granted"
ALREADY_GRANTED = "already_granted"
REVOKED = "revoked"
NOT_HELD = "not_held"
NEEDS_OAUTH = "needs_oauth"
SKIPPED = "skipped"
FAILED = "failed"
TIMEOUT = "timeout"

_MEMBER_TTL = 600


def _member_key(discord_id: str) -> str:
    return f"community:member:{discord_id}"


class CommunityAccess:
    def __init__(self, provider: Optional[CommunityProvider], *, timeout_s: float = 5.0, retries: int = 1):
        self.provider = provider
        self._timeout = timeout_s
        self._retries = max(0, retries)

    async def _remember(self, discord_id: str, member: bool) -> None:
        await aset(_member_key(discord_id), {"member": member}, ttl_seconds=_MEMBER_TTL)

    async def _run(self, op: str, user: User, fn, *args) -> str:
        last = FAILED
        for attempt in range(self._retries + 1):
            try:
                outcome = await asyncio.wait_for(fn(*args), timeout=self._timeout)
            except asyncio.TimeoutError:
                last = TIMEOUT
                log.warning("community.%s user=%s attempt=%d timed out", op, user.id, attempt + 1)
                continue
            except Exception as e:
                last = FAILED
                log.warning("community.%s user=%s attempt=%d error=%s", op, user.id, attempt + 1, e)
                continue
            log.info("community.%s user=%s discord=%s outcome=%s", op, user.id, user.discord_id, outcome)
            return outcome
        log.error("community.%s user=%s discord=%s outcome=%s", op, user.id, user.discord_id, last)
        return last

    async def _grant_once(self, discord_id: str, join_token: Optional[str]) -> str:
        if not await self.provider.is_member(discord_id):
            if not join_token:
                await self._remember(discord_id, False)
                return NEEDS_OAUTH
            # The join request carries the paid role
            await self.provider.add_member(discord_id, join_token)
            await self._remember(discord_id, True)
            return GRANTED
        await self._remember(discord_id, True)
        if await self.provider.has_role(discord_id):
            return ALREADY_GRANTED
        await self.provider.add_role(discord_id)
        return GRANTED

    async def grant(self, user: User, join_token: Optional[str] = None) -> str:
        if self.provider is None:
            log.info("community.grant user=%s outcome=%s (not configured)", user.id, SKIPPED)
            return SKIPPED
        if not user.discord_id:
            log.info("community.grant user=%s outcome=%s (no discord id)", user.id, NEEDS_OAUTH)
            return NEEDS_OAUTH
        return await self._run("grant", user, self._grant_once, user.discord_id, join_token)

    async def _revoke_once(self, discord_id: str) -> str:
        if not await self.provider.has_role(discord_id):
            return NOT_HELD
        await self.provider.remove_role(discord_id)
        return REVOKED

    async def revoke(self, user: User) -> str:
        if self.provider is None or not user.discord_id:
            log.info("community.revoke user=%s outcome=%s", user.id, SKIPPED)
            return SKIPPED
        return await self._run("revoke", user, self._revoke_once, user.discord_id)

    async def needs_discord_oauth(self, user: User, join_token: Optional[str] = None) -> bool:
        """True when the user must go through Discord OAuth to join the server."""
        if self.provider is None:
            return False
        if not user.discord_id:
            return True
        if join_token:
            return False
        cached = await aget(_member_key(user.discord_id))
        if cached is not None:
            return not cached.get("member")
        try:
            member = await asyncio.wait_for(self.provider.is_member(user.discord_id), timeout=self._timeout)
        except Exception as e:
            log.warning("community.membership user=%s unknown: %s", user.id, e)
            return False
        await self._remember(user.discord_id, member)
        return not member
