"""
Key-value backends for the read-through cache and the snapshot store.

Values are strings (JSON documents); TTLs are in seconds. ``RedisManager``
implements the same protocol on top of redis.asyncio.
"""
from __future__ import annotations

import time
from typing import Callable, Optional, Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def sadd(self, key: str, member: str, ttl_s: Optional[float] = None) -> None: ...

    async def smembers(self, key: str) -> set[str]: ...


class InMemoryBackend:
    """
    Process-local backend with per-key expiry.

    Good for tests and single-process deployments without Redis. Each key
    operation is atomic with respect to the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str, Optional[float]]] = {}
        self._sets: dict[str, tuple[set[str], Optional[float]]] = {}

    def _expires_at(self, ttl_s: Optional[float]) -> Optional[float]:
        return None if ttl_s is None else self._clock() + ttl_s

    def _alive(self, expires_at: Optional[float]) -> bool:
        return expires_at is None or self._clock() < expires_at

    async def get(self, key: str) -> Optional[str]:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if not self._alive(expires_at):
            self._values.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        self._values[key] = (value, self._expires_at(ttl_s))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._values.pop(key, None) is not None:
                removed += 1
            if self._sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def sadd(self, key: str, member: str, ttl_s: Optional[float] = None) -> None:
        members, expires_at = self._sets.get(key, (set(), None))
        if not self._alive(expires_at):
            members = set()
        members.add(member)
        self._sets[key] = (members, self._expires_at(ttl_s))

    async def smembers(self, key: str) -> set[str]:
        item = self._sets.get(key)
        if item is None:
            return set()
        members, expires_at = item
        if not self._alive(expires_at):
            self._sets.pop(key, None)
            return set()
        return set(members)

    def __len__(self) -> int:
        return sum(1 for _, exp in self._values.values() if self._alive(exp))

    def __bool__(self) -> bool:
        return True
