"""
backend/app/providers/http_client.py

Purpose:
    Outbound HTTP for the odds provider: retries with exponential backoff on
    429/5xx and network errors, Retry-After support, and a circuit breaker
    that the client gates and feeds itself.

Dependencies:
    - httpx
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from app.services.errors import ProviderError

logger = logging.getLogger("sportsbook.http_client")

_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
_MAX_BACKOFF_SECONDS = 60.0


class CircuitBreaker:
    """closed -> open after ``failure_threshold`` consecutive failures,
    half_open once ``recovery_timeout`` has passed, closed again on success."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 3, recovery_timeout: float = 300):
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self.opened_at is None:
            return self.CLOSED
        if time.monotonic() - self.opened_at >= self.recovery_timeout:
            return self.HALF_OPEN
        return self.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == self.OPEN

    def can_attempt(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        if self.opened_at is not None:
            logger.info("Circuit breaker closed after successful call")
        self.failure_count = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == self.HALF_OPEN or (
            self.opened_at is None and self.failure_count >= self.failure_threshold
        ):
            self.opened_at = time.monotonic()
            logger.warning("Circuit breaker OPEN after %d failures", self.failure_count)

    def snapshot(self) -> dict[str, Any]:
        retry_in = None
        if self.state == self.OPEN:
            retry_in = round(self.recovery_timeout - (time.monotonic() - self.opened_at), 1)
        return {"state": self.state, "failures": self.failure_count, "retry_in_seconds": retry_in}


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    for header in ("retry-after", "x-ratelimit-retry-after"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return float(value)
        except (ValueError, TypeError):
            continue
    return None


def safe_url(url: str) -> str:
    """Strip query params (they carry the API key) for logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class ResilientClient:
    """httpx.AsyncClient wrapper. Requests refused while the circuit is open
    raise ProviderError; exhausted retries count as one circuit failure."""

    def __init__(
        self,
        name: str,
        timeout: float = 15.0,
        max_retries: int = 1,
        base_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit: Optional[CircuitBreaker] = None,
    ):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._name = name
        self._max_retries = max(0, int(max_retries))
        self._base_delay = base_delay
        self.circuit = circuit or CircuitBreaker()
        self.requests_total = 0
        self.retries_total = 0

    def _backoff(self, attempt: int, resp: Optional[httpx.Response] = None) -> float:
        delay = _parse_retry_after(resp) if resp is not None else None
        if delay is None:
            delay = self._base_delay * (2 ** attempt)
        return min(delay, _MAX_BACKOFF_SECONDS)

    async def request(
        self,
        method: str,
        url: str,
        before_attempt: Optional[Callable[[], None]] = None,
        **kwargs,
    ) -> httpx.Response:
        """Send with retry/backoff. A retryable status that never clears is returned as-is.

        ``before_attempt`` runs ahead of every HTTP attempt, retries included;
        an exception from it ends the request without sending.
        """
        if not self.circuit.can_attempt():
            raise ProviderError(f"{self._name}: circuit open")

        attempts = self._max_retries + 1
        last_exc: Optional[Exception] = None
        last_resp: Optional[httpx.Response] = None

        for attempt in range(attempts):
            if before_attempt is not None:
                before_attempt()
            if attempt:
                self.retries_total += 1
            self.requests_total += 1
            try:
                resp = await self._client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError) as exc:
                last_exc = exc
                logger.warning(
                    "[%s] Network error on %s %s (attempt %d/%d): %s",
                    self._name, method, safe_url(url), attempt + 1, attempts, exc,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._backoff(attempt))
                continue

            if resp.status_code not in _RETRYABLE_STATUSES:
                self.circuit.record_success()
                return resp

            last_resp = resp
            logger.warning(
                "[%s] HTTP %d on %s %s (attempt %d/%d)",
                self._name, resp.status_code, method, safe_url(url), attempt + 1, attempts,
            )
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff(attempt, resp))

        self.circuit.record_failure()
        if last_resp is not None:
            logger.error(
                "[%s] All %d attempts failed for %s %s (last status: %d)",
                self._name, attempts, method, safe_url(url), last_resp.status_code,
            )
            return last_resp

        logger.error(
            "[%s] All %d attempts failed for %s %s: %s",
            self._name, attempts, method, safe_url(url), last_exc,
        )
        raise last_exc  # type: ignore[misc]

    async def get(self, url: str, before_attempt: Optional[Callable[[], None]] = None, **kwargs) -> httpx.Response:
        return await self.request("GET", url, before_attempt=before_attempt, **kwargs)

    def snapshot(self) -> dict[str, Any]:
        return {
            "circuit": self.circuit.snapshot(),
            "requests_total": self.requests_total,
            "retries_total": self.retries_total,
        }

    async def aclose(self) -> None:
        await self._client.aclose()
