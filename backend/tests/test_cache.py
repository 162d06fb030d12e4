"""
Tests for backend/signal_bridge/cache.py

Covers SimpleCache: TTL expiry on an injected clock, single-flight
fetches, and key / prefix invalidation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from signal_bridge.cache import SimpleCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSimpleCache:
    """Tests for SimpleCache."""

    @pytest.mark.asyncio
    async def test_value_reused_until_ttl(self):
        """Happy path: a cached value is served until it expires, then refetched."""
        clock = FakeClock()
        cache = SimpleCache(clock=clock)
        fetch = AsyncMock(side_effect=[3, 4])

        assert await cache.get_or_fetch("risk:a:aster:weekly", fetch, 60) == 3
        clock.now += 59
        assert await cache.get_or_fetch("risk:a:aster:weekly", fetch, 60) == 3
        clock.now += 1
        assert await cache.get_or_fetch("risk:a:aster:weekly", fetch, 60) == 4
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_single_flight(self):
        """Happy path: concurrent misses share one fetch; falsy results are cached."""
        cache = SimpleCache()

        async def slow_fetch():
            await asyncio.sleep(0.01)
            return 0.0

        fetch = AsyncMock(side_effect=slow_fetch)
        results = await asyncio.gather(*(cache.get_or_fetch("k", fetch, 60) for _ in range(3)))

        assert results == [0.0, 0.0, 0.0]
        assert await cache.get_or_fetch("k", fetch, 60) == 0.0
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_error_not_cached(self):
        """Failure: a failing fetch propagates and is retried next time."""
        cache = SimpleCache()
        fetch = AsyncMock(side_effect=[RuntimeError("db down"), 5])

        with pytest.raises(RuntimeError):
            await cache.get_or_fetch("k", fetch, 60)

        assert await cache.get_or_fetch("k", fetch, 60) == 5

    @pytest.mark.asyncio
    async def test_delete_prefix_scopes_to_account(self):
        """Happy path: invalidating one account keeps the others."""
        cache = SimpleCache()
        for key in ("risk:a:aster:daily", "risk:a:aster:weekly", "risk:b:aster:daily"):
            await cache.get_or_fetch(key, AsyncMock(return_value=1), 60)

        await cache.delete_prefix("risk:a:aster:")

        assert "risk:a:aster:daily" not in cache
        assert "risk:a:aster:weekly" not in cache
        assert "risk:b:aster:daily" in cache

    @pytest.mark.asyncio
    async def test_delete_and_clear(self):
        cache = SimpleCache()
        await cache.get_or_fetch("settings:a:aster", AsyncMock(return_value={}), 60)
        await cache.get_or_fetch("settings:b:aster", AsyncMock(return_value={}), 60)

        await cache.delete("settings:a:aster")
        assert "settings:a:aster" not in cache
        assert "settings:b:aster" in cache

        await cache.clear()
        assert "settings:b:aster" not in cache
