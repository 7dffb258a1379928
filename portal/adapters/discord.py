import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

from portal.core.errors import InvalidCredentialsError, UpstreamUnavailableError

log = logging.getLogger("discord")

DISCORD_API = "https://discord.com/api/v10"
DISCORD_OAUTH = "https://discord.com/api/oauth2"
DISCORD_CDN = "https://cdn.discordapp.com"
OAUTH_SCOPES = "identify email guilds.join"


@dataclass
class DiscordProfile:
    id: str
    username: str
    email: Optional[str] = None
    avatar: Optional[str] = None


@dataclass
class OAuthToken:
    access_token: str
    scope: str = ""

    @property
    def can_join(self) -> bool:
        return "guilds.join" in self.scope.split()


def _avatar_url(u: Dict[str, Any]) -> Optional[str]:
    if not u.get("avatar"):
        return None
    return f"{DISCORD_CDN}/avatars/{u['id']}/{u['avatar']}.png"


class DiscordOAuth:
    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, *, timeout_s: float = 8.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._timeout = timeout_s

    def authorize_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": OAUTH_SCOPES,
        }
        if state:
            params["state"] = state
        return f"{DISCORD_OAUTH}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthToken:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                r = await client.post(
                    f"{DISCORD_OAUTH}/token",
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                    },
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            log.error("discord.oauth token exchange unreachable: %s", e)
            raise UpstreamUnavailableError("Discord is unreachable. Please try again.") from e
        if r.status_code in (400, 401):
            log.warning("discord.oauth code rejected status=%s", r.status_code)
            raise InvalidCredentialsError("Discord authorization failed", reason="discord_auth_failed")
        if r.is_error:
            raise UpstreamUnavailableError("Discord is unavailable. Please try again.")
        body = r.json()
        return OAuthToken(access_token=body["access_token"], scope=body.get("scope", ""))

    async def get_profile(self, access_token: str) -> DiscordProfile:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                r = await client.get(f"{DISCORD_API}/users/@me", headers={"Authorization": f"Bearer {access_token}"})
                r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise InvalidCredentialsError("Discord authorization failed", reason="discord_auth_failed") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Discord is unreachable. Please try again.") from e
        u = r.json()
        return DiscordProfile(
            id=str(u["id"]),
            username=u.get("global_name") or u.get("username") or "",
            email=u.get("email") if u.get("verified", True) else None,
            avatar=_avatar_url(u),
        )


class CommunityProvider(Protocol):
    async def is_member(self, discord_id: str) -> bool: ...

    async def has_role(self, discord_id: str) -> bool: ...

    async def add_member(self, discord_id: str, access_token: str) -> bool: ...

    async def add_role(self, discord_id: str) -> bool: ...

    async def remove_role(self, discord_id: str) -> bool: ...


class DiscordGuild:
    """Bot-credential client for the managed server and its paid-member role."""

    def __init__(self, bot_token: str, guild_id: str, paid_role_id: str, *, timeout_s: float = 8.0):
        self.guild_id = guild_id
        self.paid_role_id = paid_role_id
        self._headers = {"Authorization": f"Bot {bot_token}", "Content-Type": "application/json"}
        self._timeout = timeout_s

    def _member_url(self, discord_id: str) -> str:
        return f"{DISCORD_API}/guilds/{self.guild_id}/members/{discord_id}"

    async def get_member(self, discord_id: str) -> Optional[Dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            r = await client.get(self._member_url(discord_id), headers=self._headers)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json()

    async def is_member(self, discord_id: str) -> bool:
        return (await self.get_member(discord_id)) is not None

    async def has_role(self, discord_id: str) -> bool:
        member = await self.get_member(discord_id)
        if member is None:
            return False
        return self.paid_role_id in [str(r) for r in member.get("roles") or []]

    async def add_member(self, discord_id: str, access_token: str) -> bool:
        """Join the user to the server; needs a token with the guilds.join scope."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            r = await client.put(
                self._member_url(discord_id),
                headers=self._headers,
                json={"access_token": access_token, "roles": [self.paid_role_id]},
            )
        # 201 joined, 204 already a member
        r.raise_for_status()
        return r.status_code == 201

    async def add_role(self, discord_id: str) -> bool:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            r = await client.put(f"{self._member_url(discord_id)}/roles/{self.paid_role_id}", headers=self._headers)
        r.raise_for_status()
        return True

    async def remove_role(self, discord_id: str) -> bool:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            r = await client.delete(f"{self._member_url(discord_id)}/roles/{self.paid_role_id}", headers=self._headers)
        if r.status_code == 404:
            return False
        r.raise_for_status()
        return True
