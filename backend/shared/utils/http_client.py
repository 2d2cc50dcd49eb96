"""
Async HTTP client for the upstream provider gateway.
Retries rate limits, server errors and timeouts; records request metrics.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.utils.logging import get_logger
from shared.utils.metrics import UPSTREAM_LATENCY, UPSTREAM_REQUESTS

logger = get_logger(__name__)

MAX_RETRY_AFTER_S = 10.0


class GatewayHTTPClient:
    """
    Thin httpx wrapper. ``get`` returns any response below 400 and 404s;
    other 4xx raise immediately, 429/5xx/timeouts are retried with a linear
    backoff and re-raised once attempts run out.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = 10.0,
        max_retries: int = 2,
        backoff_s: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s
        self._attempts = max(1, max_retries + 1)
        self._backoff_s = backoff_s
        self._transport = transport
        self._headers = {"Accept": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            transport=self._transport,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        if not self._client:
            raise RuntimeError("GatewayHTTPClient not started. Call start() first.")

        last_exc: Optional[Exception] = None
        for attempt in range(1, self._attempts + 1):
            start_time = time.perf_counter()
            status = "error"
            try:
                resp = await self._client.get(path, params=params)
                status = str(resp.status_code)
                if resp.status_code == 429 or resp.status_code >= 500:
                    logger.warning("upstream_retryable_status", path=path, status=resp.status_code, attempt=attempt)
                    last_exc = httpx.HTTPStatusError(
                        f"upstream returned {resp.status_code}", request=resp.request, response=resp
                    )
                    if attempt < self._attempts:
                        await asyncio.sleep(self._retry_delay(resp, attempt))
                    continue
                if resp.status_code >= 400 and resp.status_code != 404:
                    resp.raise_for_status()
                logger.debug(
                    "upstream_request_success",
                    path=path,
                    status=resp.status_code,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                return resp
            except httpx.TimeoutException as exc:
                status = "timeout"
                last_exc = exc
                logger.warning("upstream_timeout", path=path, attempt=attempt)
            except httpx.TransportError as exc:
                last_exc = exc
                logger.warning("upstream_transport_error", path=path, error=str(exc), attempt=attempt)
            finally:
                UPSTREAM_REQUESTS.labels(status=status).inc()
                UPSTREAM_LATENCY.observe(time.perf_counter() - start_time)

            if attempt < self._attempts:
                await asyncio.sleep(self._backoff_s * attempt)

        if last_exc is None:
            raise RuntimeError(f"no request attempted for {path}")
        raise last_exc

    def _retry_delay(self, resp: httpx.Response, attempt: int) -> float:
        if resp.status_code == 429:
            try:
                return min(float(resp.headers.get("Retry-After", self._backoff_s * attempt)), MAX_RETRY_AFTER_S)
            except ValueError:
                return self._backoff_s * attempt
        return self._backoff_s * attempt
