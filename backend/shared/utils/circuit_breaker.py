"""
Circuit breaker for the upstream pull endpoint.

States:
  CLOSED    requests pass through
  OPEN      recent consecutive failures, requests fail fast
  HALF_OPEN after the recovery timeout, a single probe is let through
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.errors import ScorelineError
from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(ScorelineError):
    """Raised instead of calling the upstream while the circuit is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN. Retry after {retry_after:.0f}s.")


def _every_exception(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    """
    Async circuit breaker.

    ``is_failure`` decides which exceptions count towards opening the circuit;
    an exception it rejects still propagates but leaves the failure count alone.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self._is_failure = is_failure or _every_exception
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.recovery_timeout_s:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self._lock:
            current = self.state
            if current == CircuitState.OPEN:
                retry_after = self.recovery_timeout_s - (self._clock() - self._opened_at)
                raise CircuitBreakerOpen(self.name, max(retry_after, 1.0))
            if current == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitBreakerOpen(self.name, 1.0)
                self._probe_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            await self._on_error(exc)
            raise
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                logger.info("circuit_breaker_closed", name=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    async def _on_error(self, exc: Exception) -> None:
        async with self._lock:
            probing = self._probe_in_flight
            self._probe_in_flight = False
            if not self._is_failure(exc):
                if probing:
                    # The endpoint answered; treat it as recovered.
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                return
            self._failure_count += 1
            if probing:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning("circuit_breaker_reopened", name=self.name, error=str(exc))
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failures=self._failure_count,
                    error=str(exc),
                )
