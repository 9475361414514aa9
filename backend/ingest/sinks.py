"""
Downstream sinks invoked by the poller after each successful cycle.
"""
from __future__ import annotations

from typing import Protocol, Sequence

from shared.models.domain import ChangeRecord, NormalizedRecord
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class PersistenceSink(Protocol):
    async def persist(self, source: str, records: Sequence[NormalizedRecord]) -> None: ...


class NotificationSink(Protocol):
    async def notify(self, source: str, changes: Sequence[ChangeRecord]) -> None: ...


class LoggingPersistenceSink:
    """Records each persisted batch in the structured log."""

    async def persist(self, source: str, records: Sequence[NormalizedRecord]) -> None:
        logger.info(
            "records_persisted",
            source=source,
            count=len(records),
            external_ids=[r.external_id for r in records[:20]],
        )


class RedisChangePublisher:
    """Publishes every change as JSON on the source's Redis pub/sub channel."""

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis

    async def notify(self, source: str, changes: Sequence[ChangeRecord]) -> None:
        receivers = 0
        for change in changes:
            receivers += await self._redis.publish_change(source, change.model_dump_json())
        logger.info("changes_published", source=source, count=len(changes), receivers=receivers)
