"""
Test resilience layer: retry with backoff and circuit breaker.
"""

import sys
from pathlib import Path

_root = Path(__file__).resolve().parent.parent.parent
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))

import pytest
from mandala.core.resilience import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
    retry_with_backoff,
)


def _flaky(failures):
    calls = {"n": 0}

    def call():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise ValueError(f"Attempt {calls['n']} failed")
        return "Success!"

    return call, calls


def _unreliable(should_fail):
    if should_fail:
        raise ConnectionError("Service unavailable")
    return "OK"


class TestRetry:

    def test_succeeds_after_retries(self):
        func, calls = _flaky(2)
        assert retry_with_backoff(max_retries=3, initial_delay=0)(func)() == "Success!"
        assert calls["n"] == 3

    def test_gives_up_and_reraises(self):
        func, calls = _flaky(10)
        with pytest.raises(ValueError):
            retry_with_backoff(max_retries=2, initial_delay=0)(func)()
        assert calls["n"] == 3

    def test_only_listed_exceptions_retried(self):
        calls = {"n": 0}

        @retry_with_backoff(max_retries=3, initial_delay=0, exceptions=(ConnectionError,))
        def boom():
            calls["n"] += 1
            raise KeyError("not transient")

        with pytest.raises(KeyError):
            boom()
        assert calls["n"] == 1


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        circuit = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        for _ in range(3):
            with pytest.raises(ConnectionError):
                circuit.call(_unreliable, should_fail=True)
        assert circuit.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerError):
            circuit.call(_unreliable, should_fail=False)

    def test_success_resets_count(self):
        circuit = CircuitBreaker(failure_threshold=2)
        with pytest.raises(ConnectionError):
            circuit.call(_unreliable, should_fail=True)
        assert circuit.call(_unreliable, should_fail=False) == "OK"
        assert circuit.failure_count == 0
        assert circuit.state == CircuitState.CLOSED

    def test_recovers_through_half_open(self):
        circuit = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        with pytest.raises(ConnectionError):
            circuit.call(_unreliable, should_fail=True)
        assert circuit.state == CircuitState.OPEN
        assert circuit.call(_unreliable, should_fail=False) == "OK"
        assert circuit.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        circuit = CircuitBreaker(failure_threshold=3, recovery_timeout=0)
        for _ in range(3):
            with pytest.raises(ConnectionError):
                circuit.call(_unreliable, should_fail=True)
        with pytest.raises(ConnectionError):
            circuit.call(_unreliable, should_fail=True)
        assert circuit.state == CircuitState.OPEN
