"""
Scheduler service for Scorefeed.
Wires the cache, change detector and provider client into ingestion cycles
and keeps one recurring poller per source running until shutdown.
"""
from __future__ import annotations

import asyncio
import signal
from datetime import date, datetime, timezone
from typing import Optional, Union

from redis.exceptions import RedisError

from shared.cache.backends import CacheBackend, InMemoryBackend
from shared.cache.metered import MeteredCache
from shared.cache.policy import CachePolicy
from shared.cache.read_through import ReadThroughCache
from shared.config import CacheBackendKind, Settings, get_settings
from shared.utils.http_client import ProviderHTTPClient
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager
from shared.utils.retry import RetryExecutor

from ingest.change_detection import ChangeDetector, SnapshotStore
from ingest.cycle import IngestionCycle
from ingest.sinks import LoggingPersistenceSink, NotificationSink, RedisChangePublisher
from ingest.sources import PollSource, live_matches_source, matches_by_date_source
from scheduler.poller import PollerLocks, RecurringPoller

logger = get_logger(__name__)

# How often the service checks for a new UTC day to re-target the schedule poller.
ROLLOVER_CHECK_S = 60.0


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


async def connect_redis(redis: RedisManager, settings: Settings) -> None:
    """Connect with backoff; the last connection error propagates."""
    retry = RetryExecutor.from_settings(settings, max_attempts=settings.redis_connect_attempts)
    await retry.execute(
        lambda attempt: redis.connect(),
        should_retry=lambda exc: isinstance(exc, (RedisError, OSError)),
    )


class SchedulerService:
    """
    Owns the pollers:
    1. Starts the live-matches poller and today's fixtures poller
    2. Swaps the fixtures poller when the UTC date rolls over
    3. Stops every poller on shutdown
    """

    def __init__(
        self,
        cycle: IngestionCycle,
        client: ProviderHTTPClient,
        notify: Optional[NotificationSink] = None,
        settings: Settings | None = None,
    ) -> None:
        self._cycle = cycle
        self._client = client
        self._notify = notify
        self._settings = settings or get_settings()
        self._locks = PollerLocks()
        self._persist = LoggingPersistenceSink()
        self._live: Optional[RecurringPoller] = None
        self._schedule: Optional[RecurringPoller] = None
        self._schedule_day: Optional[date] = None
        self._shutdown = asyncio.Event()

    @property
    def pollers(self) -> list[RecurringPoller]:
        return [p for p in (self._live, self._schedule) if p is not None]

    def _make_poller(self, source: PollSource, interval_s: float) -> RecurringPoller:
        return RecurringPoller(
            self._cycle,
            source,
            interval_s,
            persist=self._persist,
            notify=self._notify,
            locks=self._locks,
        )

    def start_pollers(self) -> None:
        self._live = self._make_poller(
            live_matches_source(self._client.fetch), self._settings.live_poll_interval_s
        )
        self._live.start()
        self._roll_schedule(_utc_today())

    def _roll_schedule(self, day: date) -> None:
        if self._schedule is not None:
            self._schedule.stop()
        self._schedule_day = day
        self._schedule = self._make_poller(
            matches_by_date_source(self._client.fetch, day), self._settings.schedule_poll_interval_s
        )
        self._schedule.start()
        logger.info("schedule_poller_targeted", day=day.isoformat())

    async def stop_pollers(self) -> None:
        pollers = self.pollers
        for poller in pollers:
            poller.stop()
        await asyncio.gather(*(p.wait_stopped() for p in pollers))

    async def run(self) -> None:
        self.start_pollers()
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=ROLLOVER_CHECK_S)
            except asyncio.TimeoutError:
                today = _utc_today()
                if today != self._schedule_day:
                    self._roll_schedule(today)

    def request_shutdown(self) -> None:
        logger.info("scheduler_shutdown_requested")
        self._shutdown.set()


async def main() -> None:
    """Scheduler service entrypoint."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server()

    redis: Optional[RedisManager] = None
    backend: Union[CacheBackend, RedisManager]
    if settings.cache_backend == CacheBackendKind.REDIS:
        redis = RedisManager(settings)
        await connect_redis(redis, settings)
        backend = redis
    else:
        backend = InMemoryBackend()
        logger.warning("in_memory_cache_backend", detail="cache and snapshots are process-local")

    cache = MeteredCache(
        ReadThroughCache(
            backend,
            CachePolicy.from_settings(settings),
            prefix=settings.cache_prefix,
            single_flight=settings.cache_single_flight,
        )
    )
    detector = ChangeDetector(SnapshotStore.from_settings(backend, settings))
    cycle = IngestionCycle(RetryExecutor.from_settings(settings), cache, detector)

    client = ProviderHTTPClient.rapidapi(settings)
    await client.start()

    notify = RedisChangePublisher(redis) if redis is not None else None
    service = SchedulerService(cycle, client, notify=notify, settings=settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_shutdown)

    logger.info("scheduler_service_started", instance_id=settings.instance_id)

    try:
        await service.run()
    finally:
        await service.stop_pollers()
        await client.close()
        if redis is not None:
            await redis.disconnect()
        logger.info("scheduler_service_stopped")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
