"""
One polling pass for one source: cache lookup, retried fetch + normalize,
per-record change detection.
"""
from __future__ import annotations

import time
from typing import Any, Optional, Union

import httpx
from pydantic import ValidationError

from shared.cache.metered import MeteredCache
from shared.cache.read_through import ReadThroughCache
from shared.errors import IngestError, NormalizationError, TransportError
from shared.models.domain import CycleResult, NormalizedRecord
from shared.utils.logging import get_logger
from shared.utils.metrics import (
    CHANGES_DETECTED,
    DETECTION_FAILURES,
    INGEST_CYCLE_SECONDS,
    INGEST_CYCLES,
    atrack_latency,
)
from shared.utils.retry import RetryExecutor

from ingest.change_detection import ChangeDetector
from ingest.sources import PollSource

logger = get_logger(__name__)

Cache = Union[ReadThroughCache, MeteredCache]


class IngestionCycle:
    """
    Runs fetch -> normalize -> detect for a source.

    Fetch and normalize run inside the retry executor as one operation, so
    every attempt is judged by the operation itself: a non-2xx status raises
    ``TransportError``, a bad payload raises ``NormalizationError`` (never
    retried by the default policy).
    """

    def __init__(
        self,
        retry: RetryExecutor,
        cache: Cache,
        detector: ChangeDetector,
    ) -> None:
        self._retry = retry
        self._cache = cache
        self._detector = detector

    async def _fetch_and_normalize(self, source: PollSource, attempt: int) -> list[NormalizedRecord]:
        if attempt > 1:
            logger.info("fetch_retry_attempt", source=source.name, attempt=attempt)

        response = await source.fetch(source.request)
        if not response.ok:
            raise TransportError(
                f"{source.request.endpoint} returned HTTP {response.status_code}",
                status_code=response.status_code,
                endpoint=source.request.endpoint,
            )
        try:
            return source.normalize(response.payload)
        except NormalizationError:
            raise
        except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as exc:
            raise NormalizationError(f"{source.name}: {exc}") from exc

    async def _load(self, source: PollSource, bypass_cache: bool) -> tuple[list[NormalizedRecord], bool]:
        async def supplier() -> list[dict[str, Any]]:
            records = await self._retry.execute(
                lambda attempt: self._fetch_and_normalize(source, attempt),
                should_retry=source.should_retry,
            )
            return [r.model_dump(mode="json") for r in records]

        if bypass_cache:
            raw = await supplier()
            from_cache = False
        else:
            raw, from_cache = await self._cache.remember_with_status(
                source.cache_key(), source.category, supplier
            )
        return [NormalizedRecord.model_validate(item) for item in raw], from_cache

    async def run(self, source: PollSource, bypass_cache: bool = False) -> CycleResult:
        """
        Execute one cycle.

        Returns a failed ``CycleResult`` (no records) when the fetch fails after
        retries or the payload cannot be normalized. Change detection failures
        only affect the records they happen on.
        """
        start = time.perf_counter()
        async with atrack_latency(INGEST_CYCLE_SECONDS, source=source.name):
            try:
                records, from_cache = await self._load(source, bypass_cache)
            except IngestError as exc:
                return self._failure(source, exc, start)
            except httpx.HTTPError as exc:
                return self._failure(source, TransportError(str(exc), endpoint=source.request.endpoint), start)
            except ValidationError as exc:
                return self._failure(source, NormalizationError(f"cached records unreadable: {exc}"), start)
            except Exception as exc:
                logger.error("ingest_fetch_crashed", source=source.name, exc_info=True)
                error = TransportError(
                    f"{type(exc).__name__}: {exc}", endpoint=source.request.endpoint
                )
                return self._failure(source, error, start)

            changes, failures = await self._detector.detect_batch(records)

        changed = [c for c in changes if c.has_changes]
        if changed:
            CHANGES_DETECTED.labels(source=source.name).inc(len(changed))
        if failures:
            DETECTION_FAILURES.labels(source=source.name).inc(len(failures))
        INGEST_CYCLES.labels(source=source.name, outcome="success").inc()

        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "ingest_cycle_completed",
            source=source.name,
            records=len(records),
            changed=len(changed),
            detection_failures=len(failures),
            from_cache=from_cache,
            bypass_cache=bypass_cache,
            latency_ms=round(latency_ms, 2),
        )
        return CycleResult(
            source=source.name,
            success=True,
            records=records,
            changed=changed,
            from_cache=from_cache,
            detection_failures=failures,
            latency_ms=latency_ms,
        )

    def _failure(self, source: PollSource, exc: Exception, start: float) -> CycleResult:
        latency_ms = (time.perf_counter() - start) * 1000
        status_code: Optional[int] = getattr(exc, "status_code", None)
        INGEST_CYCLES.labels(source=source.name, outcome="failure").inc()
        logger.error(
            "ingest_cycle_failed",
            source=source.name,
            error=str(exc),
            error_type=type(exc).__name__,
            status_code=status_code,
            latency_ms=round(latency_ms, 2),
        )
        return CycleResult(
            source=source.name,
            success=False,
            error=str(exc),
            error_type=type(exc).__name__,
            latency_ms=latency_ms,
        )
