# portal/core/config.py
import os
import json
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

# Load .env into process environment early
load_dotenv()


def _get(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None else default


def _get_list(name: str, default_list: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default_list)
    s = raw.strip()
    # Try JSON first
    if s.startswith("[") and s.endswith("]"):
        try:
            parsed = json.loads(s)
            if isinstance(parsed, list):
                return [str(x) for x in parsed]
        except Exception:
            pass
    # Fallback to CSV
    return [x.strip() for x in s.split(",") if x.strip()]


def _get_int(name: str, default: int) -> int:
    try:
        return int(float(_get(name, str(default)) or default))
    except Exception:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(_get(name, str(default)) or default)
    except Exception:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = _get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    JWT_SECRET: str
    DATABASE_URL: str = "sqlite:///data/portal.db"
    FRONTEND_URL: str = "https://www.rain.club"
    CORS_ORIGINS: List[str] = field(default_factory=lambda: ["*"])
    # Session lifetimes differ per entry path; kept configurable until the policy is settled
    SESSION_TTL_OAUTH_HOURS: int = 24
    SESSION_TTL_LOGIN_HOURS: int = 168
    # Access policy
    GRACE_PERIOD_DAYS: int = 2
    ONBOARDING_FINAL_STEP: int = 5
    ONBOARDING_BYPASS: bool = True
    # Upstream call budgets
    BILLING_TIMEOUT_S: float = 10.0
    COMMUNITY_TIMEOUT_S: float = 5.0
    COMMUNITY_RETRIES: int = 1
    # One-time codes
    LOGIN_CODE_TTL_MINUTES: int = 15
    WELCOME_CODE_TTL_DAYS: int = 7
    LOGIN_RL_PER_MIN: int = 10
    # Stripe (server-side)
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_PRICE_ID_MONTHLY: str | None = None
    STRIPE_PORTAL_CONFIGURATION_ID: str | None = None
    # Discord
    DISCORD_CLIENT_ID: str | None = None
    DISCORD_CLIENT_SECRET: str | None = None
    DISCORD_REDIRECT_URI: str | None = None
    DISCORD_BOT_TOKEN: str | None = None
    DISCORD_GUILD_ID: str | None = None
    DISCORD_PAID_ROLE_ID: str | None = None
    # SMTP (verification codes)
    SMTP_HOST: str | None = None
    SMTP_PORT: int | None = None
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM: str | None = None

    @property
    def stripe_configured(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def discord_oauth_configured(self) -> bool:
        return bool(self.DISCORD_CLIENT_ID and self.DISCORD_CLIENT_SECRET and self.DISCORD_REDIRECT_URI)

    @property
    def frontend_base(self) -> str:
        url = (self.FRONTEND_URL or "").strip().strip("'\"")
        if not url.startswith("http"):
            url = f"https://{url}"
        return url.rstrip("/")


def get_settings() -> Settings:
    secret = _get("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET is required in .env")

    return Settings(
        JWT_SECRET=secret.strip(),
        DATABASE_URL=(_get("DATABASE_URL", "sqlite:///data/portal.db") or "").strip(),
        FRONTEND_URL=(_get("FRONTEND_URL", "https://www.rain.club") or "").strip(),
        CORS_ORIGINS=_get_list("CORS_ORIGINS", ["*"]),
        SESSION_TTL_OAUTH_HOURS=_get_int("SESSION_TTL_OAUTH_HOURS", 24),
        SESSION_TTL_LOGIN_HOURS=_get_int("SESSION_TTL_LOGIN_HOURS", 168),
        GRACE_PERIOD_DAYS=_get_int("GRACE_PERIOD_DAYS", 2),
        ONBOARDING_FINAL_STEP=_get_int("ONBOARDING_FINAL_STEP", 5),
        ONBOARDING_BYPASS=_get_bool("ONBOARDING_BYPASS", True),
        BILLING_TIMEOUT_S=_get_float("BILLING_TIMEOUT_S", 10.0),
        COMMUNITY_TIMEOUT_S=_get_float("COMMUNITY_TIMEOUT_S", 5.0),
        COMMUNITY_RETRIES=_get_int("COMMUNITY_RETRIES", 1),
        LOGIN_CODE_TTL_MINUTES=_get_int("LOGIN_CODE_TTL_MINUTES", 15),
        WELCOME_CODE_TTL_DAYS=_get_int("WELCOME_CODE_TTL_DAYS", 7),
        LOGIN_RL_PER_MIN=_get_int("LOGIN_RL_PER_MIN", 10),
        STRIPE_SECRET_KEY=_get("STRIPE_SECRET_KEY"),
        STRIPE_WEBHOOK_SECRET=_get("STRIPE_WEBHOOK_SECRET"),
        STRIPE_PRICE_ID_MONTHLY=_get("STRIPE_PRICE_ID_MONTHLY"),
        STRIPE_PORTAL_CONFIGURATION_ID=_get("STRIPE_PORTAL_CONFIGURATION_ID"),
        DISCORD_CLIENT_ID=_get("DISCORD_CLIENT_ID"),
        DISCORD_CLIENT_SECRET=_get("DISCORD_CLIENT_SECRET"),
        DISCORD_REDIRECT_URI=_get("DISCORD_REDIRECT_URI"),
        DISCORD_BOT_TOKEN=_get("DISCORD_BOT_TOKEN"),
        DISCORD_GUILD_ID=_get("DISCORD_GUILD_ID"),
        DISCORD_PAID_ROLE_ID=_get("DISCORD_PAID_ROLE_ID"),
        SMTP_HOST=_get("SMTP_HOST"),
        SMTP_PORT=(_get_int("SMTP_PORT", 0) if _get("SMTP_PORT") else None),
        SMTP_USER=_get("SMTP_USER"),
        SMTP_PASSWORD=_get("SMTP_PASSWORD"),
        SMTP_FROM=_get("SMTP_FROM") or _get("SMTP_USER"),
    )
