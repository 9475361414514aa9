"""
Redis connection manager for the Scorefeed worker.
Provides the async connection pool, the cache/snapshot backend operations,
and the pub/sub helper used to fan out change notifications.
"""
from __future__ import annotations

import math
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from shared.config import Settings, get_settings
from shared.errors import CacheBackendError
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
CHANGE_CHANNEL = "{prefix}:{source}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


def _ttl_seconds(ttl_s: Optional[float]) -> Optional[int]:
    # Redis EX takes whole seconds; round up so keys never expire early.
    if ttl_s is None:
        return None
    return max(1, math.ceil(ttl_s))


class RedisManager:
    """
    Manages the async Redis connection pool.

    Implements the ``CacheBackend`` protocol: every command failure is raised
    as ``CacheBackendError`` so callers can degrade instead of crashing.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool and verify it with a PING."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Backend operations ──────────────────────────────────────────────
    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            raise CacheBackendError(f"GET {key} failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl_s: Optional[float] = None) -> None:
        try:
            await self.client.set(key, value, ex=_ttl_seconds(ttl_s))
        except RedisError as exc:
            raise CacheBackendError(f"SET {key} failed: {exc}") from exc

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self.client.delete(*keys))
        except RedisError as exc:
            raise CacheBackendError(f"DEL failed: {exc}") from exc

    async def sadd(self, key: str, member: str, ttl_s: Optional[float] = None) -> None:
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.sadd(key, member)
            ttl = _ttl_seconds(ttl_s)
            if ttl is not None:
                pipe.expire(key, ttl)
            await pipe.execute()
        except RedisError as exc:
            raise CacheBackendError(f"SADD {key} failed: {exc}") from exc

    async def smembers(self, key: str) -> set[str]:
        try:
            return set(await self.client.smembers(key))
        except RedisError as exc:
            raise CacheBackendError(f"SMEMBERS {key} failed: {exc}") from exc

    # ── Pub/Sub publish ─────────────────────────────────────────────────
    async def publish_change(self, source: str, payload: str) -> int:
        """Publish a change notification on the source's channel."""
        channel = _fmt(CHANGE_CHANNEL, prefix=self._settings.change_channel_prefix, source=source)
        return await self.client.publish(channel, payload)
