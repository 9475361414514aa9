"""Hit/miss accounting decorator for the read-through cache."""
from __future__ import annotations

from typing import Any, Optional, Protocol, Union

from shared.cache.policy import CachePolicy
from shared.cache.read_through import ReadThroughCache, Supplier
from shared.models.enums import CacheCategory
from shared.utils.metrics import CACHE_REQUESTS

_MISSING = object()


class CounterLike(Protocol):
    def inc(self, amount: float = 1) -> None: ...


class MeteredCache:
    """
    Wraps a ``ReadThroughCache`` and counts the outcome of every ``get`` and
    ``remember`` call on the injected counters. Everything else is delegated.
    """

    def __init__(
        self,
        inner: ReadThroughCache,
        hits: Optional[CounterLike] = None,
        misses: Optional[CounterLike] = None,
    ) -> None:
        self._inner = inner
        self._hits = hits if hits is not None else CACHE_REQUESTS.labels(result="hit")
        self._misses = misses if misses is not None else CACHE_REQUESTS.labels(result="miss")

    @property
    def policy(self) -> CachePolicy:
        return self._inner.policy

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._inner.get(key, _MISSING)
        if value is _MISSING:
            self._misses.inc()
            return default
        self._hits.inc()
        return value

    async def has(self, key: str) -> bool:
        return await self._inner.has(key)

    async def put(self, key: str, value: Any, ttl_s: float) -> bool:
        return await self._inner.put(key, value, ttl_s)

    async def forget(self, key: str) -> bool:
        return await self._inner.forget(key)

    async def clear_all(self) -> bool:
        return await self._inner.clear_all()

    async def remember(
        self, key: str, category: Union[CacheCategory, str, None], supplier: Supplier
    ) -> Any:
        value, _ = await self.remember_with_status(key, category, supplier)
        return value

    async def remember_with_status(
        self, key: str, category: Union[CacheCategory, str, None], supplier: Supplier
    ) -> tuple[Any, bool]:
        value, hit = await self._inner.remember_with_status(key, category, supplier)
        (self._hits if hit else self._misses).inc()
        return value, hit
