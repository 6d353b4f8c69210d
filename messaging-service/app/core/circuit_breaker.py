"""
Circuit Breaker

Fails fast on calls to the push provider and Redis when they keep failing,
so a dead dependency does not stall message fan-out.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests fail immediately
- HALF_OPEN: Testing if service has recovered

Usage:
    async with push_circuit_breaker:
        await client.post(...)

Breakers are only touched from the event loop, so no locking.
"""

import time
import logging
from typing import Dict, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open"""
    def __init__(self, name: str, message: str = "Circuit breaker is open"):
        self.name = name
        self.message = f"[{name}] {message}"
        super().__init__(self.message)


class CircuitBreaker:
    """
    Circuit breaker for external service calls.

    Attributes:
        name: Identifier for this circuit breaker
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds open before a half-open trial
        success_threshold: Half-open successes needed to close
        expected_exceptions: Exception types that count as failures
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 2,
        expected_exceptions: tuple = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.expected_exceptions = expected_exceptions

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.total_opens = 0

    def _allow_request(self) -> bool:
        if self.state != CircuitState.OPEN:
            return True

        elapsed = time.time() - (self.opened_at or 0.0)
        if elapsed < self.recovery_timeout:
            return False

        self.state = CircuitState.HALF_OPEN
        self.success_count = 0
        logger.info(f"Circuit breaker '{self.name}' HALF_OPEN after {elapsed:.1f}s")
        return True

    def _open(self, reason: str):
        self.state = CircuitState.OPEN
        self.opened_at = time.time()
        self.total_opens += 1
        logger.warning(f"Circuit breaker '{self.name}' OPENED: {reason}")

    def _record_success(self):
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = CircuitState.CLOSED
                logger.info(f"Circuit breaker '{self.name}' CLOSED after recovery")

    def _record_failure(self, exception: BaseException):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN:
            self._open(f"trial call failed: {exception}")
        elif self.failure_count >= self.failure_threshold:
            self._open(f"{self.failure_count} consecutive failures")

    async def __aenter__(self):
        if not self._allow_request():
            raise CircuitBreakerError(
                self.name,
                f"Circuit is OPEN. Will retry after {self.recovery_timeout}s"
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_val is None:
            self._record_success()
        elif isinstance(exc_val, self.expected_exceptions):
            self._record_failure(exc_val)
        return False

    def reset(self):
        """Back to CLOSED with clean counters."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = None

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "total_opens": self.total_opens,
        }


_circuit_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **options) -> CircuitBreaker:
    """One breaker per name; options only apply on first creation."""
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(name=name, **options)
    return _circuit_breakers[name]


def get_all_circuit_breaker_stats() -> Dict[str, Dict]:
    return {name: cb.to_dict() for name, cb in _circuit_breakers.items()}


def reset_all_circuit_breakers():
    for cb in _circuit_breakers.values():
        cb.reset()


redis_circuit_breaker = get_circuit_breaker("redis", failure_threshold=5, recovery_timeout=30.0)

push_circuit_breaker = get_circuit_breaker("expo_push", failure_threshold=3, recovery_timeout=60.0)
