from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from portal.core.config import Settings
from portal.core.errors import AccessDeniedError, InvalidCredentialsError
from portal.data.records import User
from portal.data.store import IdentityStore
from portal.services import rate_limit
from portal.services.engine import AccessEngine
from portal.services.gate import authenticate, authorize_request
from portal.services.webhooks import WebhookProcessor


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> IdentityStore:
    return request.app.state.store


def get_engine(request: Request) -> AccessEngine:
    return request.app.state.engine


def get_webhooks(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


def client_ip(request: Request) -> Optional[str]:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else None


def current_user(request: Request, authorization: Optional[str] = Header(None)) -> User:
    """Signed-in user, no subscription check (setup and onboarding routes)."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Access token required")
    user, _ = authenticate(get_store(request), authorization, get_settings(request).JWT_SECRET)
    request.state.user = user
    return user


def optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[User]:
    """Signed-in user when a valid token is presented, otherwise anonymous."""
    if not authorization:
        return None
    try:
        user, _ = authenticate(get_store(request), authorization, get_settings(request).JWT_SECRET)
    except InvalidCredentialsError:
        return None
    return user


def gated_user(request: Request, authorization: Optional[str] = Header(None)) -> User:
    """Signed-in user who also passes the access policy."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Access token required")
    ctx = authorize_request(
        get_store(request), authorization, get_settings(request).JWT_SECRET, get_engine(request).policy
    )
    request.state.user = ctx.user
    return ctx.user


def admin_user(user: User = Depends(gated_user)) -> User:
    if not user.is_admin:
        raise AccessDeniedError("Admin access required", reason="admin_required")
    return user


async def login_rate_limit(request: Request) -> None:
    limit = get_settings(request).LOGIN_RL_PER_MIN
    if not await rate_limit.allow(request.url.path, client_ip(request), limit):
        raise HTTPException(status_code=429, detail="Too many attempts, please wait a minute")
