"""
Self-rescheduling pollers.

Each poller runs one ingestion cycle, hands the outcome to its sinks, then
schedules its next trigger ``interval_s`` later. The chain is driven by a
scheduler primitive (``call_later``) rather than a sleeping loop, so it can
be stopped between ticks and faked in tests.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from shared.models.domain import CycleResult
from shared.models.enums import PollerState
from shared.utils.logging import get_logger, poll_context
from shared.utils.metrics import POLLER_SKIPPED, POLLERS_RUNNING

from ingest.cycle import IngestionCycle
from ingest.sinks import NotificationSink, PersistenceSink
from ingest.sources import PollSource

logger = get_logger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_s: float, callback: TickCallback) -> Cancellable: ...


class AsyncioScheduler:
    """Runs callbacks as tasks on the running event loop after a delay."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def call_later(self, delay_s: float, callback: TickCallback) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay_s, self._spawn, callback)

    def _spawn(self, callback: TickCallback) -> None:
        task = asyncio.ensure_future(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class PollerLocks:
    """
    In-process registry of running poller identities.

    Pollers sharing a registry and a name never run concurrently.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def try_acquire(self, identity: str) -> bool:
        if identity in self._held:
            return False
        self._held.add(identity)
        return True

    def release(self, identity: str) -> None:
        self._held.discard(identity)

    def is_held(self, identity: str) -> bool:
        return identity in self._held

    @asynccontextmanager
    async def hold(self, identity: str) -> AsyncIterator[bool]:
        """Yield whether ``identity`` was acquired; release it on every exit path."""
        acquired = self.try_acquire(identity)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(identity)


class RecurringPoller:
    """
    Drives one ``PollSource`` through repeated ingestion cycles.

    ``start()`` fires the first trigger immediately. A trigger that finds the
    identity already running is dropped, not queued. Cycle failures and
    unexpected exceptions are logged and the next tick is still scheduled;
    only ``stop()`` ends the chain.
    """

    def __init__(
        self,
        cycle: IngestionCycle,
        source: PollSource,
        interval_s: float,
        name: Optional[str] = None,
        bypass_cache: bool = False,
        persist: Optional[PersistenceSink] = None,
        notify: Optional[NotificationSink] = None,
        scheduler: Optional[Scheduler] = None,
        locks: Optional[PollerLocks] = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._cycle = cycle
        self._source = source
        self._interval_s = interval_s
        self._name = name or source.name
        self._bypass_cache = bypass_cache
        self._persist = persist
        self._notify = notify
        self._scheduler = scheduler or AsyncioScheduler()
        self._locks = locks or PollerLocks()

        self._state = PollerState.IDLE
        self._started = False
        self._stopped = False
        self._handle: Optional[Cancellable] = None
        self._ticks = 0
        self._in_tick = False
        self._stopped_event = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def start(self) -> None:
        if self._stopped:
            raise RuntimeError(f"poller {self._name} was stopped and cannot be restarted")
        if self._started:
            return
        self._started = True
        POLLERS_RUNNING.inc()
        logger.info("poller_started", poller=self._name, interval_s=self._interval_s)
        self._schedule(0)

    def stop(self) -> None:
        """Stop the chain; an in-flight cycle finishes but is not rescheduled."""
        if self._stopped:
            return
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._started:
            POLLERS_RUNNING.dec()
        if not self._in_tick:
            self._mark_stopped()
        logger.info("poller_stop_requested", poller=self._name)

    async def wait_stopped(self) -> None:
        await self._stopped_event.wait()

    async def trigger(self) -> Optional[CycleResult]:
        """
        Run one tick now.

        Returns the cycle result, or None when the tick was skipped (stopped
        or overlapping) or the cycle raised.
        """
        if self._stopped:
            logger.debug("poll_ignored_stopped", poller=self._name)
            return None

        async with self._locks.hold(self._name) as acquired:
            if not acquired:
                POLLER_SKIPPED.labels(poller=self._name).inc()
                logger.info("poll_skipped_overlap", poller=self._name)
                return None
            self._state = PollerState.RUNNING
            self._ticks += 1
            self._in_tick = True
            try:
                with poll_context(self._name, self._ticks):
                    result = await self._run_once()
            finally:
                self._in_tick = False

        self._after_tick()
        return result

    async def _run_once(self) -> Optional[CycleResult]:
        try:
            result = await self._cycle.run(self._source, bypass_cache=self._bypass_cache)
        except asyncio.CancelledError:
            if self._stopped:
                self._mark_stopped()
            else:
                self._state = PollerState.IDLE
            raise
        except Exception as exc:
            logger.error("poll_cycle_crashed", error=str(exc), exc_info=True)
            return None

        if not result.success:
            logger.warning(
                "poll_cycle_failed",
                error=result.error,
                error_type=result.error_type,
            )
            return result

        await self._dispatch(result)
        logger.info(
            "poll_cycle_completed",
            records=len(result.records),
            changed=len(result.changed),
            from_cache=result.from_cache,
        )
        return result

    async def _dispatch(self, result: CycleResult) -> None:
        if self._persist is not None:
            try:
                await self._persist.persist(result.source, result.records)
            except Exception as exc:
                logger.error("persist_sink_failed", error=str(exc), exc_info=True)

        if self._notify is not None and result.changed:
            try:
                await self._notify.notify(result.source, result.changed)
            except Exception as exc:
                logger.error("notify_sink_failed", error=str(exc), exc_info=True)

    def _after_tick(self) -> None:
        if self._stopped:
            self._mark_stopped()
        elif self._started:
            self._schedule(self._interval_s)
        else:
            self._state = PollerState.IDLE

    def _schedule(self, delay_s: float) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._scheduler.call_later(delay_s, self.trigger)
        self._state = PollerState.RESCHEDULED
        logger.debug("poll_rescheduled", poller=self._name, delay_s=delay_s)

    def _mark_stopped(self) -> None:
        self._state = PollerState.STOPPED
        self._stopped_event.set()
        logger.info("poller_stopped", poller=self._name)
