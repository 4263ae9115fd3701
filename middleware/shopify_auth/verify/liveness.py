"""
Access token liveness cache.

Confirming that an access token is still accepted costs an Admin API call,
so a confirmed (shop, token) pair is remembered for a while. The cache is
LRU-bounded so many shops cannot grow it without limit.
"""

import asyncio
import functools
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from ..auth.session import Session

logger = logging.getLogger(__name__)


# ============================================================================
# TTL + LRU Cache
# ============================================================================

class TTLCache:
    """
    In-memory LRU cache with a per-entry time-to-live.

    Entries older than the TTL are dropped on access; inserting past capacity
    evicts the least recently used entry. Not thread-safe: it is shared by
    coroutines on one event loop and never awaits while mutating.
    """

    def __init__(
        self,
        capacity: int = 1000,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            capacity: Maximum number of entries (at least 1)
            ttl_seconds: Entry lifetime in seconds
            clock: Monotonic time source, injectable for tests
        """
        self._capacity = max(1, capacity)
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()

    def get(self, key: Hashable) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None

        stored_at, value = item
        if self._clock() - stored_at >= self._ttl_seconds:
            del self._data[key]
            return None

        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self._clock(), value)
        self._data.move_to_end(key)
        while len(self._data) > self._capacity:
            self._data.popitem(last=False)

    def delete(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._data)


# ============================================================================
# Liveness Check
# ============================================================================

class AccessTokenLivenessCache:
    """
    Confirms a session's access token with the identity provider at most
    once per TTL window per (shop, access token) pair.

    Concurrent misses for the same pair share one in-flight check.
    """

    def __init__(self, identity, capacity: int = 1000, ttl_seconds: float = 3600, clock=time.monotonic):
        self.identity = identity
        self._cache = TTLCache(capacity=capacity, ttl_seconds=ttl_seconds, clock=clock)
        self._pending: Dict[Tuple[str, str], "asyncio.Task[None]"] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @staticmethod
    def _key(session: Session) -> Tuple[str, str]:
        # Only a digest of the token is kept in memory
        digest = hashlib.sha256((session.access_token or "").encode("utf-8")).hexdigest()
        return session.shop, digest

    async def verify(self, session: Session) -> None:
        """
        Make sure the session's access token is still accepted.

        Raises:
            IdentityError: HTTP_FAILURE from the provider; a 401/403 is never
                recorded as valid
        """
        key = self._key(session)
        if self._cache.get(key):
            logger.debug("Access token liveness cache hit", extra={"shop": session.shop})
            return

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._check(key, session))
            self._pending[key] = task
            task.add_done_callback(functools.partial(self._settle, key))
        else:
            logger.debug("Joining in-flight liveness check", extra={"shop": session.shop})

        await asyncio.shield(task)

    async def _check(self, key: Tuple[str, str], session: Session) -> None:
        await self.identity.fetch_shop_info(session)
        # Only reached on success, so a rejected token is never recorded
        self._cache.set(key, True)
        logger.debug("Access token confirmed with identity provider", extra={"shop": session.shop})

    def _settle(self, key: Tuple[str, str], task: "asyncio.Task[None]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            task.exception()

    def invalidate(self, session: Session) -> None:
        self._cache.delete(self._key(session))

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


__all__ = ["TTLCache", "AccessTokenLivenessCache"]
