"""
Unit tests for the read-through cache, its in-memory backend and the
metered decorator.

Run: pytest backend/tests/test_read_through_cache.py -v
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from shared.cache.backends import CacheBackend, InMemoryBackend
from shared.cache.metered import MeteredCache
from shared.cache.policy import CachePolicy
from shared.cache.read_through import ReadThroughCache
from shared.errors import CacheBackendError
from shared.models.enums import CacheCategory


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def failing_backend() -> MagicMock:
    backend = MagicMock()
    for name in ("get", "set", "delete", "sadd", "smembers"):
        setattr(backend, name, AsyncMock(side_effect=CacheBackendError(f"{name} down")))
    return backend


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryBackend:
    return InMemoryBackend(clock=clock)


@pytest.fixture
def cache(backend: InMemoryBackend, clock: FakeClock) -> ReadThroughCache:
    return ReadThroughCache(backend, CachePolicy(), clock=clock)


# ── Basic operations ────────────────────────────────────────────────────

def test_in_memory_backend_satisfies_protocol(backend: InMemoryBackend) -> None:
    assert isinstance(backend, CacheBackend)


def test_empty_in_memory_backend_is_truthy() -> None:
    backend = InMemoryBackend()

    assert len(backend) == 0
    assert bool(backend) is True


@pytest.mark.asyncio
async def test_put_then_get(cache: ReadThroughCache) -> None:
    assert await cache.put("k", {"a": 1}, 60) is True
    assert await cache.get("k") == {"a": 1}
    assert await cache.has("k") is True


@pytest.mark.asyncio
async def test_get_missing_returns_default(cache: ReadThroughCache) -> None:
    assert await cache.get("nope") is None
    assert await cache.get("nope", default="x") == "x"
    assert await cache.has("nope") is False


@pytest.mark.asyncio
async def test_entries_are_namespaced_envelopes(
    cache: ReadThroughCache, backend: InMemoryBackend, clock: FakeClock
) -> None:
    await cache.put("fixtures", [1, 2], 60)

    raw = await backend.get("sports_data:fixtures")
    envelope = json.loads(raw)
    assert envelope["value"] == [1, 2]
    assert envelope["stored_at"] == clock.now
    assert envelope["ttl_s"] == 60


@pytest.mark.asyncio
async def test_expired_entry_is_never_returned(clock: FakeClock) -> None:
    # Backend without its own expiry: the envelope alone decides.
    backend = InMemoryBackend(clock=lambda: 0.0)
    cache = ReadThroughCache(backend, clock=clock)

    await cache.put("k", "v", 10)
    clock.advance(10)
    assert await cache.get("k") == "v"
    clock.advance(0.001)
    assert await cache.get("k") is None
    assert await cache.has("k") is False


@pytest.mark.asyncio
async def test_unreadable_entry_is_a_miss(cache: ReadThroughCache, backend: InMemoryBackend) -> None:
    await backend.set("sports_data:k", "not json")
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_forget(cache: ReadThroughCache) -> None:
    await cache.put("k", 1, 60)
    assert await cache.forget("k") is True
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_clear_all_removes_registered_keys_only(
    cache: ReadThroughCache, backend: InMemoryBackend
) -> None:
    await cache.put("a", 1, 60)
    await cache.put("b", 2, 60)
    await backend.set("other:key", "keep")

    assert await cache.clear_all() is True

    assert await cache.get("a") is None
    assert await cache.get("b") is None
    assert await backend.smembers("sports_data:__keys__") == set()
    assert await backend.get("other:key") == "keep"


# ── remember ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_remember_within_ttl_calls_supplier_once(cache: ReadThroughCache, clock: FakeClock) -> None:
    supplier = AsyncMock(return_value={"fixtures": [1]})

    first = await cache.remember("live", CacheCategory.LIVE, supplier)
    clock.advance(30)
    second = await cache.remember("live", CacheCategory.LIVE, supplier)

    assert first == second == {"fixtures": [1]}
    supplier.assert_awaited_once()


@pytest.mark.asyncio
async def test_remember_past_ttl_calls_supplier_again(cache: ReadThroughCache, clock: FakeClock) -> None:
    supplier = AsyncMock(side_effect=["first", "second"])

    assert await cache.remember("live", CacheCategory.LIVE, supplier) == "first"
    clock.advance(61)
    assert await cache.remember("live", CacheCategory.LIVE, supplier) == "second"
    assert supplier.await_count == 2


@pytest.mark.asyncio
async def test_remember_ttl_chosen_by_category_at_write_time(
    cache: ReadThroughCache, clock: FakeClock
) -> None:
    supplier = AsyncMock(return_value="v")
    await cache.remember("standings", "standings", supplier)

    clock.advance(3000)
    assert await cache.remember("standings", CacheCategory.LIVE, supplier) == "v"
    supplier.assert_awaited_once()


@pytest.mark.asyncio
async def test_remember_with_status_reports_hits(cache: ReadThroughCache) -> None:
    supplier = AsyncMock(return_value=1)

    assert await cache.remember_with_status("k", "live", supplier) == (1, False)
    assert await cache.remember_with_status("k", "live", supplier) == (1, True)


@pytest.mark.asyncio
async def test_supplier_error_propagates_and_nothing_is_cached(cache: ReadThroughCache) -> None:
    supplier = AsyncMock(side_effect=RuntimeError("upstream down"))

    with pytest.raises(RuntimeError):
        await cache.remember("k", "live", supplier)
    assert await cache.has("k") is False


# ── Backend failures ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_backend_failure_on_get_is_a_miss(clock: FakeClock) -> None:
    cache = ReadThroughCache(failing_backend(), clock=clock)
    supplier = AsyncMock(return_value="fresh")

    assert await cache.get("k", default="d") == "d"
    assert await cache.remember("k", "live", supplier) == "fresh"
    supplier.assert_awaited_once()


@pytest.mark.asyncio
async def test_backend_failure_on_put_still_returns_value(clock: FakeClock) -> None:
    backend = MagicMock()
    backend.get = AsyncMock(return_value=None)
    backend.set = AsyncMock(side_effect=CacheBackendError("read-only replica"))
    backend.sadd = AsyncMock()
    cache = ReadThroughCache(backend, clock=clock)

    assert await cache.put("k", 1, 60) is False
    assert await cache.remember("k", "live", AsyncMock(return_value="fresh")) == "fresh"
    backend.sadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_backend_failure_on_forget_and_clear(clock: FakeClock) -> None:
    cache = ReadThroughCache(failing_backend(), clock=clock)

    assert await cache.forget("k") is False
    assert await cache.clear_all() is False


# ── Concurrent misses ───────────────────────────────────────────────────

async def _race(cache: ReadThroughCache) -> tuple[list, int]:
    gate = asyncio.Event()
    calls = 0

    async def supplier() -> int:
        nonlocal calls
        calls += 1
        await gate.wait()
        return calls

    tasks = [asyncio.create_task(cache.remember("k", "live", supplier)) for _ in range(3)]
    for _ in range(3):
        await asyncio.sleep(0)
    gate.set()
    return await asyncio.gather(*tasks), calls


@pytest.mark.asyncio
async def test_without_single_flight_concurrent_misses_each_call_supplier(
    backend: InMemoryBackend, clock: FakeClock
) -> None:
    cache = ReadThroughCache(backend, clock=clock)

    results, calls = await _race(cache)

    assert calls == 3
    assert await cache.get("k") == 3
    assert len(results) == 3


@pytest.mark.asyncio
async def test_single_flight_coalesces_concurrent_misses(
    backend: InMemoryBackend, clock: FakeClock
) -> None:
    cache = ReadThroughCache(backend, clock=clock, single_flight=True)

    results, calls = await _race(cache)

    assert calls == 1
    assert results == [1, 1, 1]


@pytest.mark.asyncio
async def test_single_flight_shares_supplier_error(backend: InMemoryBackend, clock: FakeClock) -> None:
    cache = ReadThroughCache(backend, clock=clock, single_flight=True)
    gate = asyncio.Event()
    supplier_calls = 0

    async def supplier() -> int:
        nonlocal supplier_calls
        supplier_calls += 1
        await gate.wait()
        raise RuntimeError("upstream down")

    tasks = [asyncio.create_task(cache.remember("k", "live", supplier)) for _ in range(2)]
    for _ in range(3):
        await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert supplier_calls == 1
    assert all(isinstance(r, RuntimeError) for r in results)


@pytest.mark.asyncio
async def test_single_flight_waiter_survives_cancelled_leader(
    backend: InMemoryBackend, clock: FakeClock
) -> None:
    cache = ReadThroughCache(backend, clock=clock, single_flight=True)
    gate = asyncio.Event()
    calls = 0

    async def supplier() -> int:
        nonlocal calls
        calls += 1
        if calls == 1:
            await gate.wait()
        return calls

    leader = asyncio.create_task(cache.remember("k", "live", supplier))
    await asyncio.sleep(0)
    waiter = asyncio.create_task(cache.remember("k", "live", supplier))
    await asyncio.sleep(0)

    leader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await leader

    assert await waiter == 2
    assert calls == 2
    assert await cache.get("k") == 2


# ── MeteredCache ────────────────────────────────────────────────────────

@pytest.fixture
def counters() -> tuple[MagicMock, MagicMock]:
    return MagicMock(), MagicMock()


@pytest.mark.asyncio
async def test_metered_remember_counts_miss_then_hit(
    cache: ReadThroughCache, counters: tuple[MagicMock, MagicMock]
) -> None:
    hits, misses = counters
    metered = MeteredCache(cache, hits=hits, misses=misses)
    supplier = AsyncMock(return_value="v")

    await metered.remember("k", "live", supplier)
    await metered.remember("k", "live", supplier)

    assert misses.inc.call_count == 1
    assert hits.inc.call_count == 1


@pytest.mark.asyncio
async def test_metered_get_counts_falsy_values_as_hits(
    cache: ReadThroughCache, counters: tuple[MagicMock, MagicMock]
) -> None:
    hits, misses = counters
    metered = MeteredCache(cache, hits=hits, misses=misses)
    await metered.put("zero", 0, 60)

    assert await metered.get("zero") == 0
    assert await metered.get("absent", default="d") == "d"

    assert hits.inc.call_count == 1
    assert misses.inc.call_count == 1


@pytest.mark.asyncio
async def test_metered_delegates_non_counted_operations(
    cache: ReadThroughCache, counters: tuple[MagicMock, MagicMock]
) -> None:
    hits, misses = counters
    metered = MeteredCache(cache, hits=hits, misses=misses)

    await metered.put("k", 1, 60)
    assert await metered.has("k") is True
    assert await metered.forget("k") is True
    assert await metered.clear_all() is True
    assert metered.policy is cache.policy

    hits.inc.assert_not_called()
    misses.inc.assert_not_called()
