"""
Pydantic v2 domain models for the ingestion pipeline.
These are the canonical internal representations passed between the cycle,
the cache, the change detector and the sinks.
"""
from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from shared.cache.policy import category_for_status
from shared.models.enums import CacheCategory


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Upstream request / response ─────────────────────────────────────────
class FetchRequest(DomainModel):
    """One upstream call: logical endpoint, parameters and HTTP method."""
    model_config = ConfigDict(frozen=True)

    endpoint: str
    params: dict[str, Any] = Field(default_factory=dict)
    method: str = "GET"

    def url(self) -> str:
        """Endpoint plus query string, with parameters in sorted order."""
        if not self.params:
            return self.endpoint
        return f"{self.endpoint}?{urlencode(sorted(self.params.items()))}"

    def cache_key(self) -> str:
        digest = hashlib.md5(f"{self.method.upper()} {self.url()}".encode("utf-8")).hexdigest()
        return f"{self.endpoint}:{digest}"


class FetchResponse(DomainModel):
    payload: Any = None
    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


# ── Cache ───────────────────────────────────────────────────────────────
class CacheEntry(DomainModel):
    """Envelope written by the read-through cache. Replaced, never mutated."""
    model_config = ConfigDict(frozen=True)

    key: str
    value: Any = None
    stored_at: float = Field(default_factory=time.time)
    ttl_s: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl_s


# ── Normalized record ───────────────────────────────────────────────────
class NormalizedRecord(DomainModel):
    """
    Vendor-agnostic representation of one match.

    ``status`` is the upstream short status code (``LIVE``, ``FT``, ``NS``...).
    Anything without a declared field goes into ``extra``; change detection
    only ever looks at declared fields.
    """
    external_id: str = Field(min_length=1)
    status: Optional[str] = None
    status_long: Optional[str] = None
    elapsed: Optional[int] = None
    score_home: Optional[int] = None
    score_away: Optional[int] = None
    league_id: Optional[str] = None
    league_name: Optional[str] = None
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    kickoff: Optional[datetime] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> CacheCategory:
        return category_for_status(self.status)


# ── Change detection ────────────────────────────────────────────────────
class FieldChange(DomainModel):
    previous: Any = None
    current: Any = None


class ChangeRecord(DomainModel):
    external_id: str
    has_changes: bool
    diff: dict[str, FieldChange] = Field(default_factory=dict)
    record: Optional[NormalizedRecord] = None


# ── Retry ───────────────────────────────────────────────────────────────
@dataclass
class RetryContext:
    """Per-invocation retry bookkeeping; never shared across cycles."""
    attempt: int
    max_attempts: int
    last_error: Optional[BaseException] = None


# ── Cycle result ────────────────────────────────────────────────────────
class CycleResult(DomainModel):
    """Outcome of one ingestion cycle for one source."""
    source: str
    success: bool
    records: list[NormalizedRecord] = Field(default_factory=list)
    changed: list[ChangeRecord] = Field(default_factory=list)
    from_cache: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    detection_failures: list[str] = Field(default_factory=list)
    latency_ms: float = 0.0
