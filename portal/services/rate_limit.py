import os
import time
from typing import Optional

try:
    from redis.asyncio import Redis as _Redis  # type: ignore
except Exception:  # pragma: no cover
    _Redis = None  # type: ignore

_redis: Optional[_Redis] = None  # type: ignore[assignment]
_mem: dict[str, tuple[int, float]] = {}


def _redis_client() -> Optional[_Redis]:
    global _redis
    if _redis is not None:
        return _redis
    url = os.getenv("REDIS_URL")
    if url and _Redis is not None:
        _redis = _Redis.from_url(url, encoding="utf-8", decode_responses=True)
    else:
        _redis = None
    return _redis


def _minute_bucket(ts: Optional[float] = None) -> int:
    return int((ts or time.time()) // 60)


async def allow(scope: str, ident: Optional[str], limit_per_min: int) -> bool:
    """Fixed one-minute window counter keyed by scope + identity (IP, email)."""
    if not ident:
        return True
    limit = max(1, limit_per_min)
    key = f"portal:rl:{scope}:{ident}:{_minute_bucket()}"
    r = _redis_client()
    if r is not None:
        try:
            val = await r.incr(key)
            if val == 1:
                await r.expire(key, 120)
            return val <= limit
        except Exception:
            pass
    # Fallback in-memory counter (per-process only)
    now = time.time()
    mem_key = f"{scope}:{ident}"
    count, bucket_ts = _mem.get(mem_key, (0, now))
    if _minute_bucket(bucket_ts) != _minute_bucket(now):
        count = 0
        bucket_ts = now
    count += 1
    _mem[mem_key] = (count, bucket_ts)
    return count <= limit


def reset() -> None:
    _mem.clear()
