import os
import json
import asyncio
from typing import Optional
from cachetools import TTLCache

from portal.core.errors import UpstreamUnavailableError

try:
    # redis>=5 provides asyncio client under redis.asyncio
    from redis.asyncio import Redis as _Redis
except Exception:  # pragma: no cover
    _Redis = None  # type: ignore

_LOCAL_TTL = int(os.getenv("CACHE_TTL_SECONDS", "300") or 300)
_cache = TTLCache(maxsize=4096, ttl=_LOCAL_TTL)  # local fallback cache
_locks: dict[str, asyncio.Lock] = {}
_lock_users: dict[str, int] = {}
_redis: Optional[_Redis] = None  # type: ignore[assignment]
_redis_disabled: bool = False


def _redis_client() -> Optional[_Redis]:  # type: ignore[override]
    global _redis
    if _redis_disabled:
        return None
    if _redis is not None:
        return _redis
    url = os.getenv("REDIS_URL")
    if url and _Redis is not None:
        # decode_responses=True gives us str payloads
        _redis = _Redis.from_url(url, encoding="utf-8", decode_responses=True)
    else:
        _redis = None
    return _redis


def _disable_redis() -> None:
    global _redis, _redis_disabled
    _redis = None
    _redis_disabled = True


# --- Async cache API ---


async def aget(key: str) -> Optional[dict]:
    r = _redis_client()
    if r:
        try:
            val = await r.get(key)
        except Exception:
            # Disable redis on first error, then fall back to local cache
            _disable_redis()
            val = None
        if val:
            try:
                return json.loads(val)
            except Exception:
                return None
    try:
        return _cache[key]
    except KeyError:
        return None


async def aset(key: str, value: dict, ttl_seconds: Optional[int] = None) -> None:
    ttl = int(ttl_seconds or _LOCAL_TTL)
    r = _redis_client()
    if r:
        try:
            await r.set(key, json.dumps(value), ex=ttl)
            return
        except Exception:
            _disable_redis()
    _cache[key] = value


# --- Distributed/local async lock ---


class _LocalAsyncLock:
    """Per-process lock; the entry for a key lives only while someone holds or awaits it."""

    def __init__(self, key: str):
        self._key = key
        self._lock: Optional[asyncio.Lock] = None

    async def __aenter__(self):
        self._lock = _checkout_local_lock(self._key)
        try:
            await self._lock.acquire()
        except BaseException:
            _return_local_lock(self._key)
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            self._lock.release()
        finally:
            _return_local_lock(self._key)


class _RedisOrLocalLock:
    def __init__(self, redis_client: _Redis, key: str, timeout_seconds: int):  # type: ignore[name-defined]
        self._r = redis_client
        self._key = key
        self._timeout = timeout_seconds
        self._redis_lock = None
        self._local: Optional[_LocalAsyncLock] = None

    async def __aenter__(self):
        # Try Redis first
        try:
            self._redis_lock = self._r.lock(
                f"portal:lock:{self._key}",
                timeout=self._timeout,
                blocking=True,
                blocking_timeout=self._timeout,
            )
            acquired = await self._redis_lock.acquire()
        except Exception:
            _disable_redis()
            self._redis_lock = None
        else:
            if acquired:
                return self
            # Held elsewhere past blocking_timeout; never enter unlocked
            self._redis_lock = None
            raise UpstreamUnavailableError(
                "This request is already being processed, please retry shortly.", reason="busy"
            )

        # Fallback to local lock
        self._local = _LocalAsyncLock(self._key)
        await self._local.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._redis_lock is not None:
            try:
                await self._redis_lock.release()
                return
            except Exception:
                pass
        if self._local is not None:
            await self._local.__aexit__(exc_type, exc, tb)


def _checkout_local_lock(key: str) -> asyncio.Lock:
    lock = _locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _locks[key] = lock
    _lock_users[key] = _lock_users.get(key, 0) + 1
    return lock


def _return_local_lock(key: str) -> None:
    users = _lock_users.get(key, 0) - 1
    if users > 0:
        _lock_users[key] = users
        return
    _lock_users.pop(key, None)
    _locks.pop(key, None)


def alock(key: str, timeout_seconds: int = 10):
    """Return an async context manager lock scoped by key.
    Uses Redis distributed lock when REDIS_URL is set; otherwise per-process lock.
    On Redis connection errors, gracefully falls back to a local lock.
    """
    r = _redis_client()
    if r is not None:
        return _RedisOrLocalLock(r, key, timeout_seconds)
    return _LocalAsyncLock(key)


def reset_local_state() -> None:
    """Drop in-process locks and cached values (tests, process restarts)."""
    _locks.clear()
    _lock_users.clear()
    _cache.clear()
