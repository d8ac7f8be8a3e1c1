"""
Circuit breaker for collaborator calls (rate limit store, audit sinks).

A breaker trips after ``failure_threshold`` consecutive failures and rejects
calls until ``recovery_timeout`` seconds have passed. The next call is then a
probe: success closes the breaker, failure trips it again immediately.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import CollaboratorError
from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenException(CollaboratorError):
    """Raised instead of calling a collaborator whose breaker is open."""

    def __init__(self, name: str, retry_in: float):
        super().__init__(
            name,
            "circuit breaker is open",
            details={"retry_in_seconds": round(max(0.0, retry_in), 3)},
        )


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one collaborator."""

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 30.0, name: str = "collaborator"):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"policy.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._total_failures = 0
        self._total_rejections = 0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _retry_in(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self.recovery_timeout - (time.monotonic() - self._opened_at)

    def _admit(self):
        if self._state != CircuitBreakerState.OPEN:
            return

        if self._retry_in() > 0:
            self._total_rejections += 1
            raise CircuitBreakerOpenException(self.name, self._retry_in())

        self._state = CircuitBreakerState.HALF_OPEN
        self.logger.info("Circuit breaker probing collaborator", breaker=self.name)

    def record_success(self):
        if self._state == CircuitBreakerState.HALF_OPEN:
            self.logger.info("Circuit breaker closed", breaker=self.name)
        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self, error: BaseException):
        self._consecutive_failures += 1
        self._total_failures += 1

        probe_failed = self._state == CircuitBreakerState.HALF_OPEN
        if probe_failed or self._consecutive_failures >= self.failure_threshold:
            self._state = CircuitBreakerState.OPEN
            self._opened_at = time.monotonic()
            self.logger.warning(
                "Circuit breaker opened",
                breaker=self.name,
                consecutive_failures=self._consecutive_failures,
                threshold=self.failure_threshold,
                probe_failed=probe_failed,
                error=repr(error),
            )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await ``func`` unless the breaker is open.

        Cancellation comes from the caller, not the collaborator, and is not
        recorded; bound the call inside ``func`` to count timeouts as failures.
        """
        self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for logs and diagnostics."""
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "total_failures": self._total_failures,
            "total_rejections": self._total_rejections,
            "retry_in_seconds": max(0.0, self._retry_in()) if self.is_open() else 0.0,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }
