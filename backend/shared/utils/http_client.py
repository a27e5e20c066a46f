"""
Async HTTP client wrapper for provider requests.
Includes retry logic, timeout management, metrics collection, and maps
every transport failure onto the pipeline's typed errors.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.errors import NetworkError, ParseError, RateLimitedError
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS

logger = get_logger(__name__)


class ProviderHTTPClient:
    """
    Async HTTP client tailored for sports data provider APIs.
    Handles timeouts, retries, and records metrics per request.

    Retries are limited to 5xx responses and timeouts within a single call;
    a throttled response is never retried here, the caller's limiter owns
    the cooldown.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        default_params: dict[str, str] | None = None,
        timeout_s: float = 15.0,
        max_retries: int = 2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s
        self._max_retries = max(1, max_retries)
        self._default_headers = headers or {}
        self._default_params = default_params or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def provider(self) -> str:
        return self._provider

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Perform a GET request and decode the JSON body.

        Args:
            path: API path relative to base_url, or an absolute URL.
            params: Query parameters merged over the client defaults.
            extra_headers: Request-specific headers.

        Returns:
            The decoded JSON document.

        Raises:
            RateLimitedError: On HTTP 429 (from_provider=True).
            NetworkError: On timeouts, connection failures and other non-2xx.
            ParseError: When the body is not valid JSON.
        """
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        merged_params = {**self._default_params, **(params or {})}
        last_exc: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            start_time = time.perf_counter()
            status = "unknown"
            try:
                resp = await self._client.get(path, params=merged_params, headers=extra_headers)
                status = str(resp.status_code)

                if resp.status_code == 429:
                    logger.warning("provider_rate_limited", provider=self._provider, path=path)
                    raise RateLimitedError(
                        f"{self._provider} returned 429 for {path}",
                        provider=self._provider,
                        from_provider=True,
                    )

                if resp.status_code >= 500 and attempt < self._max_retries:
                    logger.warning(
                        "provider_server_error",
                        provider=self._provider,
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                    await asyncio.sleep(1.0 * attempt)
                    continue

                if resp.status_code >= 400:
                    logger.error(
                        "provider_http_error",
                        provider=self._provider,
                        path=path,
                        status=resp.status_code,
                    )
                    raise NetworkError(
                        f"{self._provider} returned HTTP {resp.status_code} for {path}",
                        provider=self._provider,
                        status_code=resp.status_code,
                    )

                try:
                    data = resp.json()
                except ValueError as exc:
                    status = "parse_error"
                    raise ParseError(
                        f"{self._provider} returned malformed JSON for {path}: {resp.text[:200]}"
                    ) from exc

                logger.debug(
                    "provider_request_success",
                    provider=self._provider,
                    path=path,
                    status=resp.status_code,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                return data

            except httpx.TimeoutException as exc:
                status = "timeout"
                last_exc = exc
                logger.warning("provider_timeout", provider=self._provider, path=path, attempt=attempt)
                if attempt < self._max_retries:
                    await asyncio.sleep(1.0 * attempt)
                    continue

            except httpx.TransportError as exc:
                status = "error"
                last_exc = exc
                logger.error(
                    "provider_request_error",
                    provider=self._provider,
                    path=path,
                    error=str(exc),
                    attempt=attempt,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(1.0 * attempt)
                    continue

            finally:
                PROVIDER_REQUESTS.labels(provider=self._provider, status=status).inc()
                PROVIDER_LATENCY.labels(provider=self._provider).observe(time.perf_counter() - start_time)

        raise NetworkError(
            f"{self._provider} request to {path} failed after {self._max_retries} attempts: {last_exc}",
            provider=self._provider,
        )
