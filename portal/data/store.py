"""Identity Store: users, subscriptions, configuration, terms audit, webhook dedupe.

Thin SQL layer over an injected SQLAlchemy engine. Unique-key violations
surface as ``DuplicateRecordError`` so callers can re-query and adopt.
"""
import datetime as dt
import uuid
from dataclasses import fields
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from portal.core.errors import DuplicateRecordError
from portal.data.records import ConfigEntry, Subscription, TermsAcceptance, User
from portal.db import is_postgres

_USER_COLUMNS = tuple(f.name for f in fields(User))
_SUB_COLUMNS = tuple(f.name for f in fields(Subscription))
_BOOL_COLUMNS = {
    "is_admin",
    "is_whitelisted",
    "has_manual_subscription",
    "terms_accepted",
    "onboarding_completed",
    "cancel_at_period_end",
}
_TS_COLUMNS = {
    "terms_accepted_at",
    "verification_code_expires_at",
    "created_at",
    "updated_at",
    "current_period_start",
    "current_period_end",
    "canceled_at",
    "grace_period_end",
    "accepted_at",
}


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    e = email.strip().lower()
    return e or None


def to_utc(value: Any) -> Optional[dt.datetime]:
    """Normalize stored timestamps (datetime or ISO text) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        try:
            if "T" not in s and " " in s:
                s = s.replace(" ", "T", 1)
            d = dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
        return d.replace(tzinfo=dt.timezone.utc) if d.tzinfo is None else d.astimezone(dt.timezone.utc)
    return None


def _encode(column: str, value: Any) -> Any:
    if column in _TS_COLUMNS:
        ts = to_utc(value)
        return ts.isoformat() if ts else None
    if column in _BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _decode(column: str, value: Any) -> Any:
    if column in _TS_COLUMNS:
        return to_utc(value)
    if column in _BOOL_COLUMNS:
        return bool(value)
    return value


def _row_to_user(row) -> Optional[User]:
    if row is None:
        return None
    m = row._mapping
    data = {c: _decode(c, m[c]) for c in _USER_COLUMNS if c in m}
    data["onboarding_step"] = int(data.get("onboarding_step") or 0)
    data["username"] = data.get("username") or ""
    return User(**data)


def _row_to_subscription(row) -> Optional[Subscription]:
    if row is None:
        return None
    m = row._mapping
    return Subscription(**{c: _decode(c, m[c]) for c in _SUB_COLUMNS if c in m})


class IdentityStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ---- helpers ----

    def _insert(self, table: str, values: Dict[str, Any]) -> None:
        cols = ", ".join(values)
        params = ", ".join(f":{c}" for c in values)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(f"INSERT INTO {table} ({cols}) VALUES ({params})"),
                    {c: _encode(c, v) for c, v in values.items()},
                )
        except IntegrityError as e:
            raise DuplicateRecordError(table, str(e.orig)) from e

    def _update(self, table: str, allowed: Iterable[str], row_id: str, changes: Dict[str, Any]) -> None:
        allowed = set(allowed) - {"id", "created_at"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown {table} columns: {sorted(unknown)}")
        changes = dict(changes)
        changes["updated_at"] = utcnow()
        assignments = ", ".join(f"{c} = :{c}" for c in changes)
        params = {c: _encode(c, v) for c, v in changes.items()}
        params["_id"] = row_id
        try:
            with self.engine.begin() as conn:
                conn.execute(text(f"UPDATE {table} SET {assignments} WHERE id = :_id"), params)
        except IntegrityError as e:
            raise DuplicateRecordError(table, str(e.orig)) from e

    def _one(self, sql: str, params: Dict[str, Any]):
        with self.engine.begin() as conn:
            return conn.execute(text(sql), params).first()

    # ---- users ----

    def create_user(self, **values: Any) -> User:
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        if "discord_email" in values:
            values["discord_email"] = normalize_email(values["discord_email"])
        unknown = set(values) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown users columns: {sorted(unknown)}")
        now = utcnow()
        values.setdefault("id", uuid.uuid4().hex)
        values.setdefault("username", "")
        values["created_at"] = now
        values["updated_at"] = now
        self._insert("users", values)
        return self.get_user(values["id"])  # type: ignore[return-value]

    def get_user(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        return _row_to_user(self._one("SELECT * FROM users WHERE id = :id", {"id": user_id}))

    def get_user_by_email(self, email: Optional[str]) -> Optional[User]:
        e = normalize_email(email)
        if not e:
            return None
        return _row_to_user(self._one("SELECT * FROM users WHERE email = :e LIMIT 1", {"e": e}))

    def get_user_by_discord_id(self, discord_id: Optional[str]) -> Optional[User]:
        if not discord_id:
            return None
        return _row_to_user(
            self._one("SELECT * FROM users WHERE discord_id = :d LIMIT 1", {"d": str(discord_id)})
        )

    def get_user_by_verification_code(self, code: Optional[str]) -> Optional[User]:
        if not code:
            return None
        return _row_to_user(
            self._one("SELECT * FROM users WHERE verification_code = :c LIMIT 1", {"c": code.strip().upper()})
        )

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        if "discord_email" in changes:
            changes["discord_email"] = normalize_email(changes["discord_email"])
        if changes:
            self._update("users", _USER_COLUMNS, user_id, changes)
        return self.get_user(user_id)

    def list_users(self) -> List[User]:
        with self.engine.begin() as conn:
            rows = conn.execute(text("SELECT * FROM users ORDER BY created_at DESC")).fetchall()
        return [u for u in (_row_to_user(r) for r in rows) if u]

    # ---- subscriptions ----

    def create_subscription(self, **values: Any) -> Subscription:
        unknown = set(values) - set(_SUB_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown subscriptions columns: {sorted(unknown)}")
        now = utcnow()
        values.setdefault("id", uuid.uuid4().hex)
        values["created_at"] = now
        values["updated_at"] = now
        self._insert("subscriptions", values)
        return self.get_subscription(values["id"])  # type: ignore[return-value]

    def get_subscription(self, sub_id: Optional[str]) -> Optional[Subscription]:
        if not sub_id:
            return None
        return _row_to_subscription(self._one("SELECT * FROM subscriptions WHERE id = :id", {"id": sub_id}))

    def get_subscription_by_billing_id(self, billing_subscription_id: Optional[str]) -> Optional[Subscription]:
        if not billing_subscription_id:
            return None
        return _row_to_subscription(
            self._one(
                "SELECT * FROM subscriptions WHERE billing_subscription_id = :b LIMIT 1",
                {"b": billing_subscription_id},
            )
        )

    def get_subscription_by_user(self, user_id: Optional[str]) -> Optional[Subscription]:
        if not user_id:
            return None
        return _row_to_subscription(
            self._one(
                "SELECT * FROM subscriptions WHERE user_id = :uid "
                "ORDER BY (current_period_end IS NULL), current_period_end DESC, created_at DESC LIMIT 1",
                {"uid": user_id},
            )
        )

    def update_subscription(self, sub_id: str, **changes: Any) -> Optional[Subscription]:
        if changes:
            self._update("subscriptions", _SUB_COLUMNS, sub_id, changes)
        return self.get_subscription(sub_id)

    # ---- configuration ----

    def get_config(self, key: str) -> Optional[ConfigEntry]:
        row = self._one("SELECT key, value, description, updated_at FROM configuration WHERE key = :k", {"k": key})
        if not row:
            return None
        return ConfigEntry(key=row[0], value=row[1], description=row[2], updated_at=to_utc(row[3]))

    def set_config(self, key: str, value: str, description: Optional[str] = None) -> ConfigEntry:
        params = {"k": key, "v": value, "d": description, "ts": utcnow().isoformat()}
        sql_pg = (
            "INSERT INTO configuration (key, value, description, updated_at) "
            "VALUES (:k, :v, :d, :ts) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, "
            "description = COALESCE(EXCLUDED.description, configuration.description), "
            "updated_at = EXCLUDED.updated_at"
        )
        sql_sqlite = (
            "INSERT INTO configuration (key, value, description, updated_at) "
            "VALUES (:k, :v, :d, :ts) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "description = COALESCE(excluded.description, configuration.description), "
            "updated_at = excluded.updated_at"
        )
        with self.engine.begin() as conn:
            conn.execute(text(sql_pg if is_postgres(self.engine) else sql_sqlite), params)
        return self.get_config(key)  # type: ignore[return-value]

    def list_config(self) -> List[ConfigEntry]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text("SELECT key, value, description, updated_at FROM configuration ORDER BY key")
            ).fetchall()
        return [ConfigEntry(key=r[0], value=r[1], description=r[2], updated_at=to_utc(r[3])) for r in rows]

    # ---- terms audit (append-only) ----

    def add_terms_acceptance(self, record: TermsAcceptance) -> TermsAcceptance:
        record.id = record.id or uuid.uuid4().hex
        record.accepted_at = record.accepted_at or utcnow()
        self._insert(
            "terms_acceptances",
            {
                "id": record.id,
                "user_id": record.user_id,
                "email": record.email,
                "username": record.username,
                "ip_address": record.ip_address,
                "user_agent": record.user_agent,
                "terms_version": record.terms_version,
                "terms_version_date": record.terms_version_date,
                "content_hash": record.content_hash,
                "acceptance_method": record.acceptance_method,
                "accepted_at": record.accepted_at,
            },
        )
        return record

    def count_terms_acceptances(self, user_id: str) -> int:
        row = self._one("SELECT COUNT(*) FROM terms_acceptances WHERE user_id = :u", {"u": user_id})
        return int(row[0]) if row else 0

    # ---- webhook dedupe ----

    def mark_event_processed(self, event_id: str) -> bool:
        """Record a billing event id. False when it was already processed."""
        try:
            self._insert("processed_webhook_events", {"event_id": event_id, "processed_at": utcnow().isoformat()})
        except DuplicateRecordError:
            return False
        return True

    def forget_event(self, event_id: str) -> None:
        """Undo ``mark_event_processed`` so a redelivery is handled again."""
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM processed_webhook_events WHERE event_id = :e"), {"e": event_id})
