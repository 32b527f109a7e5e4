"""
Resilience helpers for calls that leave the process.

Retry with exponential backoff and a circuit breaker, used by the
persistence dispatcher around storage backend calls.
"""

import functools
import logging
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, block requests
    HALF_OPEN = "half_open"  # Testing if recovered


class CircuitBreakerError(Exception):
    """Circuit breaker is open."""


class CircuitBreaker:
    """
    Circuit breaker pattern for failing services.

    Stops calling a failing backend for ``recovery_timeout`` seconds once
    ``failure_threshold`` consecutive calls have failed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        success_threshold: int = 1,
    ) -> None:
        """
        Args:
            failure_threshold: Failures before opening circuit
            recovery_timeout: Seconds before trying again
            success_threshold: Successes needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self._lock = threading.Lock()

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute function through circuit breaker."""
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    logger.info("Circuit breaker: Attempting reset (HALF_OPEN)")
                    self.state = CircuitState.HALF_OPEN
                else:
                    raise CircuitBreakerError(
                        f"Circuit breaker OPEN (failed {self.failure_count} times)"
                    )

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        """Check if enough time passed to try again."""
        if not self.last_failure_time:
            return True

        elapsed = (datetime.now() - self.last_failure_time).total_seconds()
        return elapsed >= self.recovery_timeout

    def _on_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1

                if self.success_count >= self.success_threshold:
                    logger.info("Circuit breaker: CLOSED (recovered)")
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    self.success_count = 0

            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    def _on_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()
            self.success_count = 0

            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker: OPEN (%d consecutive failures)",
                        self.failure_count,
                    )
                self.state = CircuitState.OPEN


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    exceptions: tuple = (Exception,),
) -> Callable[..., Callable[..., Any]]:
    """
    Decorator for retry with exponential backoff.

    Args:
        max_retries: Maximum retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiply delay by this each retry
        max_delay: Maximum delay between retries
        exceptions: Exception types to catch and retry

    Usage:
        @retry_with_backoff(max_retries=3)
        def save():
            pass
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)

                except exceptions as e:
                    if attempt == max_retries:
                        logger.error(
                            "%s failed after %d retries: %s",
                            getattr(func, "__name__", "call"),
                            max_retries,
                            e,
                        )
                        raise

                    logger.warning(
                        "%s attempt %d failed: %s. Retrying in %.1fs...",
                        getattr(func, "__name__", "call"),
                        attempt + 1,
                        e,
                        delay,
                    )

                    if delay > 0:
                        time.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)
            return None

        return wrapper

    return decorator
