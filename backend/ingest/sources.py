"""
Polling sources: what to fetch, how to normalize it, and how often the
endpoint's data goes stale.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Callable, Optional

import httpx

from shared.errors import TransportError
from shared.models.domain import FetchRequest, FetchResponse, NormalizedRecord
from shared.models.enums import CacheCategory

from ingest.normalization.football import normalize_fixtures

FetchFn = Callable[[FetchRequest], Awaitable[FetchResponse]]
NormalizeFn = Callable[[Any], list[NormalizedRecord]]


def is_retryable(exc: BaseException) -> bool:
    """Default retry policy: 429/5xx and connection-level failures."""
    if isinstance(exc, TransportError):
        return exc.retryable
    return isinstance(
        exc, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)
    )


@dataclass(frozen=True)
class PollSource:
    """
    One logical upstream feed.

    ``category`` is the static classification of the endpoint (how often its
    data goes stale), not the status of the individual matches it returns.
    """
    name: str
    request: FetchRequest
    category: CacheCategory
    fetch: FetchFn
    normalize: NormalizeFn
    should_retry: Callable[[BaseException], bool] = field(default=is_retryable)

    def cache_key(self) -> str:
        return f"{self.name}:{self.request.cache_key()}"


def live_matches_source(fetch: FetchFn, name: str = "football_live") -> PollSource:
    return PollSource(
        name=name,
        request=FetchRequest(endpoint="fixtures", params={"live": "all"}),
        category=CacheCategory.LIVE,
        fetch=fetch,
        normalize=normalize_fixtures,
    )


def matches_by_date_source(
    fetch: FetchFn, day: date, name: Optional[str] = None
) -> PollSource:
    return PollSource(
        name=name or f"football_fixtures_{day.isoformat()}",
        request=FetchRequest(endpoint="fixtures", params={"date": day.isoformat()}),
        category=CacheCategory.UPCOMING,
        fetch=fetch,
        normalize=normalize_fixtures,
    )
