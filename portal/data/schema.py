# Identity Store schema (SQLite + Postgres)
# Tables:
#   users(id, email UNIQUE, discord_email, username, discord_id UNIQUE, avatar,
#         password_hash, is_admin, is_whitelisted, has_manual_subscription,
#         subscription_id, terms_accepted, terms_accepted_at, onboarding_step,
#         onboarding_completed, verification_code UNIQUE,
#         verification_code_expires_at, created_at, updated_at)
#   subscriptions(id, user_id, billing_customer_id,
#         billing_subscription_id UNIQUE, status, plan, current_period_start,
#         current_period_end, cancel_at_period_end, canceled_at,
#         grace_period_end, created_at, updated_at)
#   configuration(key PRIMARY KEY, value, description, updated_at)
#   terms_acceptances(id, user_id, email, username, ip_address, user_agent,
#         terms_version, terms_version_date, content_hash, acceptance_method,
#         accepted_at)
#   processed_webhook_events(event_id PRIMARY KEY, processed_at)
# Timestamps are ISO-8601 UTC text; booleans are 0/1 integers.
import threading

from sqlalchemy import text
from sqlalchemy.engine import Engine

_INIT_LOCK = threading.Lock()

_DDL = (
    """
    CREATE TABLE IF NOT EXISTS users(
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE,
        discord_email TEXT,
        username TEXT NOT NULL DEFAULT '',
        discord_id TEXT UNIQUE,
        avatar TEXT,
        password_hash TEXT,
        is_admin INTEGER NOT NULL DEFAULT 0,
        is_whitelisted INTEGER NOT NULL DEFAULT 0,
        has_manual_subscription INTEGER NOT NULL DEFAULT 0,
        subscription_id TEXT,
        terms_accepted INTEGER NOT NULL DEFAULT 0,
        terms_accepted_at TEXT,
        onboarding_step INTEGER NOT NULL DEFAULT 0,
        onboarding_completed INTEGER NOT NULL DEFAULT 0,
        verification_code TEXT UNIQUE,
        verification_code_expires_at TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions(
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        billing_customer_id TEXT,
        billing_subscription_id TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        plan TEXT NOT NULL DEFAULT 'monthly',
        current_period_start TEXT,
        current_period_end TEXT,
        cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
        canceled_at TEXT,
        grace_period_end TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_subscriptions_user_id ON subscriptions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS configuration(
        key TEXT PRIMARY KEY,
        value TEXT,
        description TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS terms_acceptances(
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        email TEXT,
        username TEXT,
        ip_address TEXT,
        user_agent TEXT,
        terms_version TEXT NOT NULL,
        terms_version_date TEXT,
        content_hash TEXT,
        acceptance_method TEXT,
        accepted_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_terms_acceptances_user_id ON terms_acceptances (user_id)",
    """
    CREATE TABLE IF NOT EXISTS processed_webhook_events(
        event_id TEXT PRIMARY KEY,
        processed_at TEXT NOT NULL
    )
    """,
)


def init_db(engine: Engine) -> None:
    """Create all tables if missing. Alembic owns schema changes after this."""
    with _INIT_LOCK:
        with engine.begin() as conn:
            for ddl in _DDL:
                conn.execute(text(ddl))
