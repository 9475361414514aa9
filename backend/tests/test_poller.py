"""
Unit tests for the recurring poller: rescheduling, overlap prevention,
sinks and cancellation.

Run: pytest backend/tests/test_poller.py -v
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.models.domain import ChangeRecord, CycleResult, NormalizedRecord
from shared.models.enums import PollerState
from ingest.sources import live_matches_source
from scheduler.poller import AsyncioScheduler, PollerLocks, RecurringPoller


class FakeHandle:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Collects scheduled callbacks; tests fire them explicitly."""

    def __init__(self) -> None:
        self.calls: list[tuple[float, Callable[[], Awaitable[Any]], FakeHandle]] = []

    def call_later(self, delay_s: float, callback: Callable[[], Awaitable[Any]]) -> FakeHandle:
        handle = FakeHandle()
        self.calls.append((delay_s, callback, handle))
        return handle

    @property
    def pending(self) -> list[tuple[float, Callable[[], Awaitable[Any]], FakeHandle]]:
        return [c for c in self.calls if not c[2].cancelled]

    async def fire_next(self) -> Any:
        delay_s, callback, handle = self.pending[0]
        handle.cancelled = True
        return await callback()


def _success(changed: int = 0) -> CycleResult:
    records = [NormalizedRecord(external_id=str(i), status="1H") for i in range(3)]
    changes = [
        ChangeRecord(external_id=r.external_id, has_changes=True, record=r) for r in records[:changed]
    ]
    return CycleResult(source="football_live", success=True, records=records, changed=changes)


def _failure() -> CycleResult:
    return CycleResult(source="football_live", success=False, error="HTTP 503", error_type="TransportError")


@pytest.fixture
def cycle() -> MagicMock:
    c = MagicMock()
    c.run = AsyncMock(return_value=_success())
    return c


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def source():
    return live_matches_source(AsyncMock())


def make_poller(cycle: MagicMock, source, scheduler: FakeScheduler, **kwargs: Any) -> RecurringPoller:
    return RecurringPoller(cycle, source, interval_s=15, scheduler=scheduler, **kwargs)


# ── Scheduling ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_schedules_immediate_first_tick(cycle, source, scheduler: FakeScheduler) -> None:
    poller = make_poller(cycle, source, scheduler)

    poller.start()

    assert [c[0] for c in scheduler.pending] == [0]
    assert poller.state == PollerState.RESCHEDULED
    cycle.run.assert_not_awaited()


@pytest.mark.asyncio
async def test_tick_runs_cycle_then_reschedules_after_interval(cycle, source, scheduler: FakeScheduler) -> None:
    poller = make_poller(cycle, source, scheduler, bypass_cache=True)
    poller.start()

    result = await scheduler.fire_next()

    assert result.success is True
    cycle.run.assert_awaited_once_with(source, bypass_cache=True)
    assert [c[0] for c in scheduler.pending] == [15]
    assert poller.state == PollerState.RESCHEDULED


@pytest.mark.asyncio
async def test_raising_cycle_still_fires_next_tick(cycle, source, scheduler: FakeScheduler) -> None:
    cycle.run.side_effect = [RuntimeError("provider exploded"), _success()]
    poller = make_poller(cycle, source, scheduler)
    poller.start()

    assert await scheduler.fire_next() is None
    assert [c[0] for c in scheduler.pending] == [15]

    result = await scheduler.fire_next()
    assert result.success is True
    assert cycle.run.await_count == 2


@pytest.mark.asyncio
async def test_failed_result_reschedules_without_calling_sinks(cycle, source, scheduler: FakeScheduler) -> None:
    cycle.run.return_value = _failure()
    persist, notify = MagicMock(), MagicMock()
    persist.persist = AsyncMock()
    notify.notify = AsyncMock()
    poller = make_poller(cycle, source, scheduler, persist=persist, notify=notify)
    poller.start()

    result = await scheduler.fire_next()

    assert result.success is False
    persist.persist.assert_not_awaited()
    notify.notify.assert_not_awaited()
    assert len(scheduler.pending) == 1


@pytest.mark.asyncio
async def test_trigger_on_unstarted_poller_runs_once(cycle, source, scheduler: FakeScheduler) -> None:
    poller = make_poller(cycle, source, scheduler)

    await poller.trigger()

    cycle.run.assert_awaited_once()
    assert scheduler.pending == []
    assert poller.state == PollerState.IDLE


def test_interval_must_be_positive(cycle, source, scheduler: FakeScheduler) -> None:
    with pytest.raises(ValueError):
        RecurringPoller(cycle, source, interval_s=0, scheduler=scheduler)


# ── Overlap prevention ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_overlapping_trigger_is_skipped(cycle, source, scheduler: FakeScheduler) -> None:
    gate = asyncio.Event()
    running = 0
    max_running = 0

    async def slow_run(*args: Any, **kwargs: Any) -> CycleResult:
        nonlocal running, max_running
        running += 1
        max_running = max(max_running, running)
        await gate.wait()
        running -= 1
        return _success()

    cycle.run.side_effect = slow_run
    poller = make_poller(cycle, source, scheduler)
    poller.start()

    first = asyncio.create_task(scheduler.fire_next())
    await asyncio.sleep(0)
    assert poller.state == PollerState.RUNNING
    # Tick 1 outlives the interval: nothing is rescheduled while it runs.
    assert scheduler.pending == []

    assert await poller.trigger() is None
    gate.set()
    await first

    assert cycle.run.await_count == 1
    assert max_running == 1
    assert [c[0] for c in scheduler.pending] == [15]


@pytest.mark.asyncio
async def test_shared_locks_prevent_same_identity_overlap(cycle, source) -> None:
    gate = asyncio.Event()

    async def slow_run(*args: Any, **kwargs: Any) -> CycleResult:
        await gate.wait()
        return _success()

    cycle.run.side_effect = slow_run
    locks = PollerLocks()
    a = RecurringPoller(cycle, source, 15, scheduler=FakeScheduler(), locks=locks)
    b = RecurringPoller(cycle, source, 15, scheduler=FakeScheduler(), locks=locks)

    task = asyncio.create_task(a.trigger())
    await asyncio.sleep(0)
    assert await b.trigger() is None
    gate.set()
    await task

    assert cycle.run.await_count == 1
    assert not locks.is_held(source.name)


@pytest.mark.asyncio
async def test_lock_released_when_cycle_raises(cycle, source, scheduler: FakeScheduler) -> None:
    locks = PollerLocks()
    cycle.run.side_effect = RuntimeError("boom")
    poller = make_poller(cycle, source, scheduler, locks=locks)

    await poller.trigger()

    assert not locks.is_held(poller.name)


@pytest.mark.asyncio
async def test_lock_released_on_cancellation(cycle, source, scheduler: FakeScheduler) -> None:
    locks = PollerLocks()

    async def hang(*args: Any, **kwargs: Any) -> CycleResult:
        await asyncio.sleep(3600)
        return _success()

    cycle.run.side_effect = hang
    poller = make_poller(cycle, source, scheduler, locks=locks)

    task = asyncio.create_task(poller.trigger())
    await asyncio.sleep(0)
    assert locks.is_held(poller.name)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not locks.is_held(poller.name)


# ── Sinks ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sinks_receive_records_and_changes(cycle, source, scheduler: FakeScheduler) -> None:
    cycle.run.return_value = _success(changed=2)
    persist, notify = MagicMock(), MagicMock()
    persist.persist = AsyncMock()
    notify.notify = AsyncMock()
    poller = make_poller(cycle, source, scheduler, persist=persist, notify=notify)

    await poller.trigger()

    persist.persist.assert_awaited_once()
    source_name, records = persist.persist.await_args.args
    assert source_name == "football_live"
    assert len(records) == 3
    _, changes = notify.notify.await_args.args
    assert [c.external_id for c in changes] == ["0", "1"]


@pytest.mark.asyncio
async def test_notify_skipped_when_nothing_changed(cycle, source, scheduler: FakeScheduler) -> None:
    notify = MagicMock()
    notify.notify = AsyncMock()
    poller = make_poller(cycle, source, scheduler, notify=notify)

    await poller.trigger()

    notify.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_sink_errors_do_not_stop_the_chain(cycle, source, scheduler: FakeScheduler) -> None:
    cycle.run.return_value = _success(changed=1)
    persist, notify = MagicMock(), MagicMock()
    persist.persist = AsyncMock(side_effect=RuntimeError("db down"))
    notify.notify = AsyncMock(side_effect=RuntimeError("pubsub down"))
    poller = make_poller(cycle, source, scheduler, persist=persist, notify=notify)
    poller.start()

    result = await scheduler.fire_next()

    assert result.success is True
    notify.notify.assert_awaited_once()
    assert [c[0] for c in scheduler.pending] == [15]


# ── Stopping ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stop_cancels_pending_tick(cycle, source, scheduler: FakeScheduler) -> None:
    poller = make_poller(cycle, source, scheduler)
    poller.start()
    await scheduler.fire_next()

    poller.stop()
    await asyncio.wait_for(poller.wait_stopped(), timeout=1)

    assert scheduler.pending == []
    assert poller.state == PollerState.STOPPED
    assert await poller.trigger() is None
    assert cycle.run.await_count == 1


@pytest.mark.asyncio
async def test_stop_during_tick_prevents_reschedule(cycle, source, scheduler: FakeScheduler) -> None:
    gate = asyncio.Event()

    async def slow_run(*args: Any, **kwargs: Any) -> CycleResult:
        await gate.wait()
        return _success()

    cycle.run.side_effect = slow_run
    poller = make_poller(cycle, source, scheduler)
    poller.start()

    tick = asyncio.create_task(scheduler.fire_next())
    await asyncio.sleep(0)
    poller.stop()
    assert poller.state == PollerState.RUNNING

    gate.set()
    await tick
    await asyncio.wait_for(poller.wait_stopped(), timeout=1)

    assert scheduler.pending == []
    assert poller.state == PollerState.STOPPED


@pytest.mark.asyncio
async def test_stop_not_blocked_by_same_name_poller_mid_tick(cycle, source) -> None:
    gate = asyncio.Event()

    async def slow_run(*args: Any, **kwargs: Any) -> CycleResult:
        await gate.wait()
        return _success()

    cycle.run.side_effect = slow_run
    locks = PollerLocks()
    busy = RecurringPoller(cycle, source, 15, scheduler=FakeScheduler(), locks=locks)
    idle = RecurringPoller(cycle, source, 15, scheduler=FakeScheduler(), locks=locks)

    task = asyncio.create_task(busy.trigger())
    await asyncio.sleep(0)
    assert locks.is_held(source.name)

    idle.stop()
    await asyncio.wait_for(idle.wait_stopped(), timeout=1)

    assert idle.state == PollerState.STOPPED
    assert busy.state == PollerState.RUNNING
    gate.set()
    await task


@pytest.mark.asyncio
async def test_stopped_poller_cannot_restart(cycle, source, scheduler: FakeScheduler) -> None:
    poller = make_poller(cycle, source, scheduler)
    poller.stop()

    with pytest.raises(RuntimeError):
        poller.start()


# ── AsyncioScheduler ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_asyncio_scheduler_drives_repeated_ticks(cycle, source) -> None:
    ticks = asyncio.Event()
    count = 0

    async def run(*args: Any, **kwargs: Any) -> CycleResult:
        nonlocal count
        count += 1
        if count >= 3:
            ticks.set()
        return _success()

    cycle.run.side_effect = run
    poller = RecurringPoller(cycle, source, interval_s=0.01, scheduler=AsyncioScheduler())
    poller.start()

    await asyncio.wait_for(ticks.wait(), timeout=2)
    poller.stop()
    await asyncio.wait_for(poller.wait_stopped(), timeout=2)

    assert cycle.run.await_count >= 3
