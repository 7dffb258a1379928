import asyncio

import pytest

from portal.core.errors import UpstreamUnavailableError
from portal.services import cache


class _HeldRedisLock:
    def __init__(self, acquired):
        self.acquired = acquired
        self.released = False

    async def acquire(self):
        return self.acquired

    async def release(self):
        self.released = True


class _FakeRedis:
    def __init__(self, acquired=True):
        self.lock_obj = _HeldRedisLock(acquired)
        self.names = []

    def lock(self, name, **kwargs):
        self.names.append(name)
        return self.lock_obj


class _DownRedis:
    def lock(self, name, **kwargs):
        raise ConnectionError("redis is down")


class TestLocalLocks:
    @pytest.mark.asyncio
    async def test_entry_is_dropped_after_release(self):
        async with cache.alock("payment:sub_1"):
            assert "payment:sub_1" in cache._locks
        assert cache._locks == {}
        assert cache._lock_users == {}

    @pytest.mark.asyncio
    async def test_many_keys_leave_nothing_behind(self):
        for i in range(50):
            async with cache.alock(f"subscription:sub_{i}"):
                pass
        assert cache._locks == {}

    @pytest.mark.asyncio
    async def test_waiters_share_one_lock(self):
        inside = 0
        peak = 0

        async def worker():
            nonlocal inside, peak
            async with cache.alock("payment:sub_1"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1
        assert cache._locks == {}
        assert cache._lock_users == {}

    @pytest.mark.asyncio
    async def test_error_inside_still_releases(self):
        with pytest.raises(RuntimeError):
            async with cache.alock("k"):
                raise RuntimeError("boom")
        assert cache._locks == {}


class TestRedisLocks:
    @pytest.mark.asyncio
    async def test_acquired(self):
        redis = _FakeRedis(acquired=True)
        async with cache._RedisOrLocalLock(redis, "payment:sub_1", 1):
            pass
        assert redis.names == ["portal:lock:payment:sub_1"]
        assert redis.lock_obj.released

    @pytest.mark.asyncio
    async def test_not_acquired_is_never_entered(self):
        entered = False
        with pytest.raises(UpstreamUnavailableError) as exc:
            async with cache._RedisOrLocalLock(_FakeRedis(acquired=False), "payment:sub_1", 1):
                entered = True
        assert not entered
        assert exc.value.reason == "busy"
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error_falls_back_to_local(self, monkeypatch):
        monkeypatch.setattr(cache, "_redis_disabled", False)
        async with cache._RedisOrLocalLock(_DownRedis(), "payment:sub_1", 1):
            assert "payment:sub_1" in cache._locks
        assert cache._redis_disabled
        assert cache._locks == {}
