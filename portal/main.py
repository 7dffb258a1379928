import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware

from portal.adapters.billing import BillingProvider, StripeBilling
from portal.adapters.discord import CommunityProvider, DiscordGuild, DiscordOAuth
from portal.core.config import Settings, get_settings
from portal.core.errors import PortalError
from portal.core.logging import setup_logging
from portal.data.schema import init_db
from portal.data.store import IdentityStore
from portal.db import build_engine
from portal.routes import admin, auth, payments, user
from portal.services.community import CommunityAccess
from portal.services.engine import AccessEngine
from portal.services.webhooks import WebhookProcessor

log = logging.getLogger("portal")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if os.getenv("ENABLE_HSTS", "0").strip().lower() in ("1", "true", "yes", "on"):
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=63072000; includeSubDomains; preload",
            )
        return response


def _default_billing(cfg: Settings) -> Optional[BillingProvider]:
    if not cfg.stripe_configured:
        log.warning("STRIPE_SECRET_KEY not set; payment routes will return 503 until configured.")
        return None
    return StripeBilling(cfg.STRIPE_SECRET_KEY, timeout_s=cfg.BILLING_TIMEOUT_S)


def _default_community(cfg: Settings) -> Optional[CommunityProvider]:
    if not (cfg.DISCORD_BOT_TOKEN and cfg.DISCORD_GUILD_ID and cfg.DISCORD_PAID_ROLE_ID):
        log.warning("Discord bot not configured; community role changes are skipped.")
        return None
    return DiscordGuild(cfg.DISCORD_BOT_TOKEN, cfg.DISCORD_GUILD_ID, cfg.DISCORD_PAID_ROLE_ID)


def _default_oauth(cfg: Settings) -> Optional[DiscordOAuth]:
    if not cfg.discord_oauth_configured:
        return None
    return DiscordOAuth(cfg.DISCORD_CLIENT_ID, cfg.DISCORD_CLIENT_SECRET, cfg.DISCORD_REDIRECT_URI)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[IdentityStore] = None,
    billing: Optional[BillingProvider] = None,
    community: Optional[CommunityProvider] = None,
    oauth: Optional[DiscordOAuth] = None,
) -> FastAPI:
    """Build the app with its collaborators; anything not passed in is built from settings."""
    setup_logging()
    cfg = settings or get_settings()
    if store is None:
        engine = build_engine(cfg.DATABASE_URL)
        init_db(engine)
        store = IdentityStore(engine)

    access = AccessEngine(
        store,
        cfg,
        billing=billing if billing is not None else _default_billing(cfg),
        community=CommunityAccess(
            community if community is not None else _default_community(cfg),
            timeout_s=cfg.COMMUNITY_TIMEOUT_S,
            retries=cfg.COMMUNITY_RETRIES,
        ),
        oauth=oauth if oauth is not None else _default_oauth(cfg),
    )

    app = FastAPI(title="Rainmakers Portal", version="1.0")
    app.state.settings = cfg
    app.state.store = store
    app.state.engine = access
    app.state.webhooks = WebhookProcessor(access)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(SecurityHeadersMiddleware)

    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log.exception("unhandled error path=%s", request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    @app.get("/api/_db/health")
    async def db_health(request: Request):
        """Lightweight DB check. Optionally protected by X-Health-Token when HEALTH_TOKEN is set."""
        required = os.getenv("HEALTH_TOKEN")
        if required and request.headers.get("x-health-token") != required:
            return JSONResponse({"ok": False}, status_code=401)
        db = request.app.state.store.engine
        try:
            with db.connect() as conn:
                conn.execute(text("SELECT 1"))
            return {"dialect": db.dialect.name, "ok": True}
        except Exception:
            log.exception("db health check failed")
            return JSONResponse({"dialect": db.dialect.name, "ok": False}, status_code=500)

    app.include_router(auth.router)
    app.include_router(payments.router)
    app.include_router(user.router)
    app.include_router(admin.router)
    return app


app = create_app()
