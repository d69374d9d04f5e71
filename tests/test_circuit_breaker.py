"""Tests for the generator circuit breaker.

Covers check(), record_success(), record_failure() and the composed
run_with_timeout() helper. State transitions:
  CLOSED -> OPEN (after threshold failures)
  OPEN -> HALF_OPEN (after cooldown)
  HALF_OPEN -> CLOSED (on success)
  HALF_OPEN -> OPEN (on failure)
"""

import threading
import time

import pytest

from coursegen.generation.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    get_breaker,
    reset_all,
    run_with_timeout,
)


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


class TestCircuitBreakerStates:
    def test_starts_closed(self):
        cb = CircuitBreaker("test-model")
        assert cb.state == CircuitState.CLOSED

    def test_stays_closed_under_threshold(self):
        cb = CircuitBreaker("test", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

    def test_opens_at_threshold(self):
        cb = CircuitBreaker("test", failure_threshold=3)
        for _ in range(3):
            cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_open_blocks_requests(self):
        cb = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=60)
        cb.record_failure()
        with pytest.raises(CircuitBreakerOpen) as exc_info:
            cb.check()
        assert exc_info.value.endpoint == "test"
        assert exc_info.value.retry_after > 0

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker("test", failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        # One more failure should NOT open (count was reset)
        cb.record_failure()
        assert cb.state == CircuitState.CLOSED

    def test_half_open_after_cooldown(self):
        cb = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        time.sleep(0.02)
        cb.check()
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_closes_on_success(self):
        cb = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        cb.record_success()
        assert cb.state == CircuitState.CLOSED

    def test_half_open_reopens_on_failure(self):
        cb = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=0.01)
        cb.record_failure()
        time.sleep(0.02)
        cb.check()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_defaults_come_from_settings(self):
        from coursegen.core.config import settings

        cb = CircuitBreaker("test")
        for _ in range(settings.circuit_failure_threshold):
            cb.record_failure()
        assert cb.state == CircuitState.OPEN


# ---------------------------------------------------------------------------
# Global registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_get_breaker_returns_same_instance(self):
        assert get_breaker("model-a") is get_breaker("model-a")

    def test_different_models_get_different_breakers(self):
        assert get_breaker("model-a") is not get_breaker("model-b")

    def test_reset_all_clears_registry(self):
        get_breaker("model-a").record_failure()
        reset_all()
        assert get_breaker("model-a")._failure_count == 0


# ---------------------------------------------------------------------------
# run_with_timeout
# ---------------------------------------------------------------------------


class TestRunWithTimeout:
    def test_success_returns_result(self):
        assert run_with_timeout(lambda: 42, timeout=5, endpoint="test") == 42

    def test_timeout_raises_and_records_failure(self):
        release = threading.Event()

        def slow():
            release.wait(5)

        started = time.monotonic()
        try:
            with pytest.raises(TimeoutError):
                run_with_timeout(slow, timeout=0.1, endpoint="slow-model")
            # Control comes back without waiting for the call to finish.
            assert time.monotonic() - started < 2
        finally:
            release.set()

        assert get_breaker("slow-model")._failure_count == 1

    def test_exception_propagates_and_records_failure(self):
        def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            run_with_timeout(failing, timeout=5, endpoint="fail-model")
        assert get_breaker("fail-model")._failure_count == 1

    def test_blocked_by_open_circuit(self):
        calls = []
        b = get_breaker("blocked")
        for _ in range(3):
            b.record_failure()

        with pytest.raises(CircuitBreakerOpen):
            run_with_timeout(lambda: calls.append(1), timeout=5, endpoint="blocked")
        assert calls == []
