"""
In-memory TTL cache for ledger-derived values

Backs the risk counters (weekly trade count / loss), the settings refresh
and the notification preference gate so each inbound alert does not hit
the ledger. Reads go through get_or_fetch; writers invalidate by key or
by account prefix.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Tuple


class SimpleCache:
    """
    Single-flight TTL cache.

    Concurrent misses for one key share a single fetch, so a burst of alerts
    for the same account runs one ledger query when an entry expires.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        # key -> (value, expires_at on `clock`)
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._clock = clock

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[1] > self._clock()

    async def get_or_fetch(
        self, key: str, fetch_fn: Callable[[], Awaitable[Any]], ttl_seconds: float
    ) -> Any:
        """
        Return the cached value or run fetch_fn once for all waiters.

        Falsy results (0, 0.0) are cached; exceptions are not.
        """
        if key in self:
            return self._entries[key][0]

        pending = self._in_flight.get(key)
        if pending is not None:
            return await pending

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            value = await fetch_fn()
        except Exception as exc:
            future.set_exception(exc)
            # Waiters re-raise it; mark retrieved so a lone caller does not warn
            future.exception()
            raise
        else:
            self._entries[key] = (value, self._clock() + ttl_seconds)
            future.set_result(value)
            return value
        finally:
            self._in_flight.pop(key, None)

    async def delete(self, key: str):
        self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str):
        """Drop every entry whose key starts with prefix (one account's counters)."""
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]

    async def clear(self):
        self._entries.clear()
