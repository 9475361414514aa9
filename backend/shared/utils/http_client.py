"""
Async HTTP fetch collaborator for provider requests.
One attempt per call: timeouts, metrics and structured logging live here,
retry decisions belong to the retry executor wrapping the cycle.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from shared.config import Settings, get_settings
from shared.errors import NormalizationError, RateLimitedError, TransportError
from shared.models.domain import FetchRequest, FetchResponse
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS

logger = get_logger(__name__)


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ProviderHTTPClient:
    """
    Async HTTP client tailored for sports data provider APIs.

    ``fetch`` returns every HTTP response as a ``FetchResponse`` except 429,
    which raises ``RateLimitedError`` carrying ``Retry-After``. Connection
    failures and timeouts raise ``TransportError`` without a status code.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.provider_request_timeout_s
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def rapidapi(cls, settings: Settings, **kwargs: Any) -> "ProviderHTTPClient":
        """Client for a RapidAPI-hosted provider, keyed from settings."""
        return cls(
            provider_name=settings.provider_name,
            base_url=settings.provider_base_url,
            headers={
                "x-rapidapi-host": settings.provider_api_host,
                "x-rapidapi-key": settings.provider_api_key,
            },
            timeout_s=settings.provider_request_timeout_s,
            **kwargs,
        )

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, request: FetchRequest) -> FetchResponse:
        """
        Perform one request for ``request``.

        Raises:
            RateLimitedError: HTTP 429.
            TransportError: timeout or connection failure.
            NormalizationError: 2xx response whose body is not JSON.
        """
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        path = "/" + request.endpoint.lstrip("/")
        start_time = time.perf_counter()
        status = "unknown"
        try:
            resp = await self._client.request(request.method, path, params=request.params or None)
            status = str(resp.status_code)
        except httpx.TimeoutException as exc:
            status = "timeout"
            logger.warning("provider_timeout", provider=self._provider, path=path)
            raise TransportError(f"{path} timed out", endpoint=request.endpoint) from exc
        except httpx.TransportError as exc:
            status = "error"
            logger.warning("provider_connection_error", provider=self._provider, path=path, error=str(exc))
            raise TransportError(f"{path} connection failed: {exc}", endpoint=request.endpoint) from exc
        finally:
            PROVIDER_LATENCY.labels(provider=self._provider).observe(time.perf_counter() - start_time)
            PROVIDER_REQUESTS.labels(provider=self._provider, endpoint=request.endpoint, status=status).inc()

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if resp.status_code == 429:
            logger.warning("provider_rate_limited", provider=self._provider, path=path)
            raise RateLimitedError(
                f"{path} rate limited", endpoint=request.endpoint, retry_after_s=_retry_after(resp)
            )

        if resp.status_code >= 400:
            logger.warning(
                "provider_http_error",
                provider=self._provider,
                path=path,
                status=resp.status_code,
                latency_ms=round(elapsed_ms, 2),
            )
            return FetchResponse(payload=None, status_code=resp.status_code, headers=dict(resp.headers))

        try:
            payload = resp.json()
        except ValueError as exc:
            raise NormalizationError(f"{path} returned a non-JSON body") from exc

        logger.debug(
            "provider_request_success",
            provider=self._provider,
            path=path,
            status=resp.status_code,
            latency_ms=round(elapsed_ms, 2),
        )
        return FetchResponse(payload=payload, status_code=resp.status_code, headers=dict(resp.headers))
