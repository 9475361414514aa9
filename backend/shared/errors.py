"""
Error taxonomy for the ingestion pipeline.

Transport failures are retried (when retryable) and surface as failed cycle
results; normalization failures are terminal for the cycle; cache and
change-detection failures are absorbed where they happen.
"""
from __future__ import annotations

from typing import Optional

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class IngestError(Exception):
    """Base exception for ingestion pipeline failures."""


class TransportError(IngestError):
    """
    Network or HTTP failure talking to the upstream provider.

    ``status_code`` is None for connection-level failures (timeouts, refused
    connections, DNS) where no response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = "") -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES


class RateLimitedError(TransportError):
    """Provider throttled the request (HTTP 429)."""

    def __init__(self, message: str, endpoint: str = "", retry_after_s: Optional[float] = None) -> None:
        self.retry_after_s = retry_after_s
        super().__init__(message, status_code=429, endpoint=endpoint)


class NormalizationError(IngestError):
    """Upstream payload could not be mapped to normalized records."""


class ChangeDetectionError(IngestError):
    """Change detection failed for a single record."""

    def __init__(self, message: str, external_id: Optional[str] = None) -> None:
        self.external_id = external_id
        super().__init__(message)


class CacheBackendError(IngestError):
    """The key-value backend behind the cache or snapshot store is unavailable."""
