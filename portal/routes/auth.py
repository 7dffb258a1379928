import datetime as dt
import hashlib
import json
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from fastapi.responses import RedirectResponse

from portal.core.config import Settings
from portal.core.errors import PortalError
from portal.core.types import (
    CodeRequest,
    CodeVerifyRequest,
    DiscordCodeRequest,
    LoginAfterPaymentRequest,
    LoginResponse,
    OnboardingUpdate,
    PasswordLoginRequest,
    PasswordSetRequest,
    SetupStatusResponse,
    TermsAcceptRequest,
)
from portal.data.records import TermsAcceptance, User
from portal.data.store import IdentityStore, utcnow
from portal.routes.deps import (
    client_ip,
    current_user,
    get_engine,
    get_settings,
    get_store,
    login_rate_limit,
)
from portal.services.engine import AccessEngine
from portal.services.gate import authenticate, current_subscription, setup_report
from portal.services.sessions import issue_session

router = APIRouter(prefix="/api/auth")
log = logging.getLogger("auth")


def _redirect(cfg: Settings, query: str) -> RedirectResponse:
    return RedirectResponse(f"{cfg.frontend_base}?{query}", status_code=302)


@router.get("/discord/url")
async def discord_authorize_url(state: Optional[str] = None, engine: AccessEngine = Depends(get_engine)):
    if engine.oauth is None:
        raise HTTPException(status_code=503, detail="Discord login is not configured")
    return {"url": engine.oauth.authorize_url(state)}


@router.get("/discord/callback")
async def discord_callback(
    bg: BackgroundTasks,
    code: Optional[str] = None,
    error: Optional[str] = None,
    cfg: Settings = Depends(get_settings),
    engine: AccessEngine = Depends(get_engine),
):
    """Browser redirect target: always lands back on the frontend."""
    if error:
        return _redirect(cfg, f"error={quote(error)}")
    if not code:
        return _redirect(cfg, "error=no_code")
    try:
        outcome = await engine.login_with_discord(code, bg)
    except PortalError as e:
        log.warning("login.discord callback failed reason=%s", e.reason)
        return _redirect(cfg, f"error=auth_failed&reason={quote(e.reason)}")
    user_json = quote(json.dumps(outcome.user.public()))
    return _redirect(
        cfg,
        f"token={outcome.token}&user={user_json}"
        f"&needsDiscordOAuth={str(outcome.needs_discord_oauth).lower()}",
    )


@router.post("/discord", response_model=LoginResponse)
async def discord_login(req: DiscordCodeRequest, bg: BackgroundTasks, engine: AccessEngine = Depends(get_engine)):
    outcome = await engine.login_with_discord(req.code, bg)
    return outcome.body()


@router.post("/login", response_model=LoginResponse, dependencies=[Depends(login_rate_limit)])
async def password_login(req: PasswordLoginRequest, bg: BackgroundTasks, engine: AccessEngine = Depends(get_engine)):
    outcome = await engine.login_with_password(req.email, req.password, bg)
    return outcome.body()


@router.post("/code/request", dependencies=[Depends(login_rate_limit)])
async def request_code(req: CodeRequest, bg: BackgroundTasks, engine: AccessEngine = Depends(get_engine)):
    await engine.request_code(req.email, bg)
    # Same answer whether or not the address is known
    return {"ok": True, "message": "If an account exists for this email, a login code has been sent."}


@router.post("/code/verify", response_model=LoginResponse, dependencies=[Depends(login_rate_limit)])
async def verify_code(req: CodeVerifyRequest, bg: BackgroundTasks, engine: AccessEngine = Depends(get_engine)):
    outcome = await engine.verify_code(req.code, bg)
    return outcome.body()


@router.post("/login-after-payment", response_model=LoginResponse, dependencies=[Depends(login_rate_limit)])
async def login_after_payment(
    req: LoginAfterPaymentRequest, bg: BackgroundTasks, engine: AccessEngine = Depends(get_engine)
):
    if not (req.sessionId or req.subscriptionId or req.email or req.discordId):
        raise HTTPException(status_code=400, detail="sessionId, subscriptionId, email or discordId is required")
    outcome = await engine.login_after_payment(
        session_id=req.sessionId,
        subscription_id=req.subscriptionId,
        email=req.email,
        discord_id=req.discordId,
        username=req.username,
        bg=bg,
    )
    return outcome.body()


@router.get("/me")
async def me(
    authorization: Optional[str] = Header(None),
    store: IdentityStore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
    engine: AccessEngine = Depends(get_engine),
):
    """Current user plus a fresh token with the same lifetime as the one presented.

    A user the access policy now denies gets the verdict but no new token.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Access token required")
    user, claims = authenticate(store, authorization, cfg.JWT_SECRET)
    try:
        ttl = dt.timedelta(seconds=int(claims["exp"]) - int(claims["iat"]))
    except (KeyError, TypeError, ValueError):
        ttl = engine.oauth_ttl
    verdict = engine.verdict_for(user, current_subscription(store, user))
    return {
        "user": user.public(),
        "token": issue_session(user, cfg.JWT_SECRET, ttl) if verdict.granted else None,
        "canAccess": verdict.granted,
        "accessReason": verdict.reason,
        **setup_report(user),
    }


@router.post("/logout")
async def logout():
    # Sessions are stateless; the client drops its token
    return {"message": "Logged out successfully"}


@router.post("/password")
async def set_password(
    req: PasswordSetRequest, user: User = Depends(current_user), engine: AccessEngine = Depends(get_engine)
):
    updated = engine.set_password(user, req.password)
    log.info("auth.password_set user=%s", user.id)
    return {"ok": True, "user": updated.public()}


@router.put("/onboarding")
async def update_onboarding(
    req: OnboardingUpdate,
    user: User = Depends(current_user),
    store: IdentityStore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
):
    changes = {}
    if req.step is not None:
        changes["onboarding_step"] = req.step
    if req.completed is not None:
        changes["onboarding_completed"] = req.completed
        if req.completed:
            changes["onboarding_step"] = max(req.step or 0, cfg.ONBOARDING_FINAL_STEP)
    updated = store.update_user(user.id, **changes) if changes else user
    return {"ok": True, "user": updated.public()}


@router.get("/setup-status", response_model=SetupStatusResponse)
async def setup_status(user: User = Depends(current_user)):
    return setup_report(user)


@router.post("/discord/link", response_model=LoginResponse)
async def link_discord(
    req: DiscordCodeRequest,
    bg: BackgroundTasks,
    user: User = Depends(current_user),
    engine: AccessEngine = Depends(get_engine),
):
    outcome = await engine.link_discord(user, req.code, bg)
    return outcome.body()


@router.post("/discord/disconnect")
async def disconnect_discord(
    bg: BackgroundTasks, user: User = Depends(current_user), engine: AccessEngine = Depends(get_engine)
):
    updated = await engine.disconnect_discord(user, bg)
    return {"ok": True, "user": updated.public()}


def _content_hash(req: TermsAcceptRequest) -> str:
    if req.termsContent:
        return hashlib.sha256(req.termsContent.encode("utf-8")).hexdigest()
    if req.contentHash:
        return req.contentHash
    return hashlib.sha256(f"{req.termsVersion}:{req.termsVersionDate}".encode("utf-8")).hexdigest()


@router.post("/terms")
async def accept_terms(
    req: TermsAcceptRequest,
    request: Request,
    user: User = Depends(current_user),
    store: IdentityStore = Depends(get_store),
):
    now = utcnow()
    record = store.add_terms_acceptance(
        TermsAcceptance(
            user_id=user.id,
            email=user.email,
            username=user.username,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            terms_version=req.termsVersion,
            terms_version_date=req.termsVersionDate,
            content_hash=_content_hash(req),
            acceptance_method=req.acceptanceMethod,
            accepted_at=now,
        )
    )
    updated = store.update_user(user.id, terms_accepted=True, terms_accepted_at=now) or user
    log.info("auth.terms_accepted user=%s version=%s", user.id, req.termsVersion)
    return {
        "ok": True,
        "acceptanceId": record.id,
        "acceptanceCount": store.count_terms_acceptances(user.id),
        "user": updated.public(),
    }
