"""Thread-safe circuit breaker for generator endpoints.

Workers share one breaker per model so that an outage at the provider
fails repair strategies fast instead of every worker waiting out its
timeout on every attempt.

States:
  CLOSED    -- normal operation, calls pass through
  OPEN      -- endpoint is down, calls fail immediately
  HALF_OPEN -- cooldown expired, one trial call allowed

``run_with_timeout`` combines a wall-clock timeout with the breaker
bookkeeping so the generator has a single helper to go through.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from enum import Enum
from typing import Any, Callable, Optional

from ..core.config import settings

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and calls are blocked."""

    def __init__(self, endpoint: str, retry_after: float):
        self.endpoint = endpoint
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker OPEN for '{endpoint}'. "
            f"Retry after {retry_after:.0f}s."
        )


class CircuitBreaker:
    """Per-endpoint circuit breaker, shared across worker threads."""

    def __init__(
        self,
        endpoint: str,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
    ) -> None:
        self.endpoint = endpoint
        self._failure_threshold = failure_threshold or settings.circuit_failure_threshold
        self._cooldown_seconds = (
            settings.circuit_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def check(self) -> None:
        """Check if a call is allowed. Raises CircuitBreakerOpen if not."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - self._last_failure_time
                if elapsed < self._cooldown_seconds:
                    raise CircuitBreakerOpen(self.endpoint, self._cooldown_seconds - elapsed)
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit %s: OPEN -> HALF_OPEN (cooldown expired)", self.endpoint)

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit %s: HALF_OPEN -> CLOSED", self.endpoint)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("Circuit %s: HALF_OPEN -> OPEN (trial call failed)", self.endpoint)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
                self._state = CircuitState.OPEN
                logger.warning(
                    "Circuit %s: CLOSED -> OPEN (%d consecutive failures)",
                    self.endpoint, self._failure_count,
                )


# ---------------------------------------------------------------------------
# Registry: one breaker per model endpoint
# ---------------------------------------------------------------------------

_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(endpoint: str) -> CircuitBreaker:
    """Get or create the circuit breaker for a model endpoint."""
    with _registry_lock:
        if endpoint not in _breakers:
            _breakers[endpoint] = CircuitBreaker(endpoint=endpoint)
        return _breakers[endpoint]


def reset_all() -> None:
    """Forget all breakers (for testing)."""
    with _registry_lock:
        _breakers.clear()


def run_with_timeout(fn: Callable[[], Any], timeout: float, endpoint: str) -> Any:
    """Run *fn* with a wall-clock timeout and breaker bookkeeping for *endpoint*.

    The worker thread is abandoned on timeout, not joined, so the caller
    gets control back after *timeout* seconds.

    Raises:
        CircuitBreakerOpen: if the circuit for *endpoint* is open.
        TimeoutError: if *fn* exceeds *timeout* seconds.
        Exception: any exception raised by *fn*.
    """
    breaker = get_breaker(endpoint)
    breaker.check()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="generator")
    future = executor.submit(fn)
    try:
        result = future.result(timeout=timeout)
    except FuturesTimeoutError:
        breaker.record_failure()
        logger.error("%s timed out after %ss", endpoint, timeout)
        raise TimeoutError(f"{endpoint} exceeded {timeout}s timeout")
    except Exception:
        breaker.record_failure()
        raise
    finally:
        executor.shutdown(wait=False)
    breaker.record_success()
    return result
