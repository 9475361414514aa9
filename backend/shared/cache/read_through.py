"""
Read-through cache with category-based TTLs.

Entries are stored as JSON ``CacheEntry`` envelopes so expiry is decided by
``now - stored_at > ttl`` against the injected clock, whatever the backend
does with its own TTL. Backend failures never reach the caller: a failed read
is a miss, a failed write is logged and the freshly computed value is still
returned.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError

from shared.cache.backends import CacheBackend
from shared.cache.policy import CachePolicy
from shared.errors import CacheBackendError
from shared.models.domain import CacheEntry
from shared.models.enums import CacheCategory
from shared.utils.logging import get_logger
from shared.utils.metrics import CACHE_BACKEND_ERRORS

logger = get_logger(__name__)

REGISTRY_SUFFIX = "__keys__"
REGISTRY_TTL_S = 86400 * 7

Supplier = Callable[[], Awaitable[Any]]


class _FlightAbandoned(Exception):
    """The caller filling a shared miss was cancelled before it finished."""


class ReadThroughCache:
    """
    Async key -> value cache over a ``CacheBackend``.

    Args:
        backend: Key-value store (``InMemoryBackend`` or ``RedisManager``).
        policy: Category -> TTL table.
        prefix: Namespace prepended to every key.
        clock: Wall clock in seconds; injectable for tests.
        single_flight: Coalesce concurrent misses on the same key into one
            supplier call (in-process only). Off by default: concurrent misses
            may each call the supplier and the last write wins.
    """

    def __init__(
        self,
        backend: CacheBackend,
        policy: CachePolicy | None = None,
        prefix: str = "sports_data:",
        clock: Callable[[], float] = time.time,
        single_flight: bool = False,
    ) -> None:
        self._backend = backend
        self._policy = policy or CachePolicy()
        self._prefix = prefix
        self._clock = clock
        self._single_flight = single_flight
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    @property
    def policy(self) -> CachePolicy:
        return self._policy

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @property
    def _registry_key(self) -> str:
        return f"{self._prefix}{REGISTRY_SUFFIX}"

    # ── Basic operations ────────────────────────────────────────────────
    async def _lookup(self, key: str) -> Optional[CacheEntry]:
        full_key = self._key(key)
        try:
            raw = await self._backend.get(full_key)
        except CacheBackendError as exc:
            CACHE_BACKEND_ERRORS.labels(operation="get").inc()
            logger.warning("cache_get_failed", key=full_key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("cache_entry_unreadable", key=full_key)
            return None
        if entry.is_expired(self._clock()):
            return None
        return entry

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for ``key`` or ``default``."""
        entry = await self._lookup(key)
        return default if entry is None else entry.value

    async def has(self, key: str) -> bool:
        return await self._lookup(key) is not None

    async def put(self, key: str, value: Any, ttl_s: float) -> bool:
        """Store ``value`` for ``ttl_s`` seconds. Returns False if the backend failed."""
        full_key = self._key(key)
        entry = CacheEntry(key=full_key, value=value, stored_at=self._clock(), ttl_s=ttl_s)
        try:
            await self._backend.set(full_key, entry.model_dump_json(), ttl_s)
            await self._backend.sadd(self._registry_key, full_key, REGISTRY_TTL_S)
        except CacheBackendError as exc:
            CACHE_BACKEND_ERRORS.labels(operation="put").inc()
            logger.warning("cache_put_failed", key=full_key, error=str(exc))
            return False
        return True

    async def forget(self, key: str) -> bool:
        full_key = self._key(key)
        try:
            await self._backend.delete(full_key)
        except CacheBackendError as exc:
            CACHE_BACKEND_ERRORS.labels(operation="delete").inc()
            logger.warning("cache_forget_failed", key=full_key, error=str(exc))
            return False
        return True

    async def clear_all(self) -> bool:
        """Delete every key this cache has registered, without scanning the backend."""
        try:
            keys = await self._backend.smembers(self._registry_key)
            await self._backend.delete(*keys, self._registry_key)
        except CacheBackendError as exc:
            CACHE_BACKEND_ERRORS.labels(operation="clear").inc()
            logger.warning("cache_clear_failed", error=str(exc))
            return False
        logger.info("cache_cleared", keys=len(keys))
        return True

    # ── Read-through ────────────────────────────────────────────────────
    async def remember(
        self,
        key: str,
        category: Union[CacheCategory, str, None],
        supplier: Supplier,
    ) -> Any:
        """
        Return the cached value for ``key`` or compute, store and return it.

        ``supplier`` is awaited at most once per call and never on a hit.
        The TTL is taken from ``category`` at write time. Supplier errors
        propagate and nothing is cached.
        """
        value, _ = await self.remember_with_status(key, category, supplier)
        return value

    async def remember_with_status(
        self,
        key: str,
        category: Union[CacheCategory, str, None],
        supplier: Supplier,
    ) -> tuple[Any, bool]:
        """Like ``remember`` but also reports whether the value came from cache."""
        entry = await self._lookup(key)
        if entry is not None:
            logger.debug("cache_hit", key=self._key(key))
            return entry.value, True

        logger.debug("cache_miss", key=self._key(key))
        if not self._single_flight:
            return await self._fill(key, category, supplier), False

        pending = self._inflight.get(key)
        if pending is not None:
            try:
                return await asyncio.shield(pending), False
            except _FlightAbandoned:
                logger.debug("single_flight_abandoned", key=self._key(key))
                return await self.remember_with_status(key, category, supplier)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await self._fill(key, category, supplier)
        except asyncio.CancelledError:
            # Waiters retry the read-through themselves.
            future.set_exception(_FlightAbandoned())
            future.exception()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Waiters re-raise it; mark retrieved so an unwaited future stays quiet.
            future.exception()
            raise
        else:
            future.set_result(value)
            return value, False
        finally:
            self._inflight.pop(key, None)

    async def _fill(
        self,
        key: str,
        category: Union[CacheCategory, str, None],
        supplier: Supplier,
    ) -> Any:
        value = await supplier()
        await self.put(key, value, self._policy.ttl_for(category))
        return value
