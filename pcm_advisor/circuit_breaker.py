"""
Circuit Breaker

Per-key state machine that stops calling a failing operation for a cooldown
period:

    closed --(threshold consecutive failures)--> open
    open --(reset_timeout elapsed)--> half-open
    half-open --(trial success)--> closed
    half-open --(trial failure)--> open

A trial call that ends without an outcome (cancelled or hung) frees its slot via
release_trial(); a half-open window whose trial calls all went silent reopens
for new trial calls after another reset_timeout.

All transitions happen under a lock so concurrent requests sharing a
breaker never interleave a read-modify-write.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .config import get_settings

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Breaker tuning (seconds)"""
    threshold: int = 3
    timeout: float = 60.0  # per-call limit for guarded operations
    reset_timeout: float = 30.0
    half_open_requests: int = 3

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            threshold=settings.circuit_breaker_threshold,
            timeout=settings.circuit_breaker_timeout,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            half_open_requests=settings.circuit_breaker_half_open_requests,
        )


class CircuitBreaker:
    """
    Consecutive-failure breaker for one operation key.

    Usage:
        breaker = CircuitBreaker("protocol-db")
        if not breaker.is_open():
            try:
                result = await call()
                breaker.record_success()
            except BackendUnavailableError:
                breaker.record_failure()
    """

    def __init__(self, key: str, config: Optional[CircuitBreakerConfig] = None, clock=time.monotonic):
        self.key = key
        self.config = config or CircuitBreakerConfig.from_settings()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at: Optional[float] = None
        self._half_open_requests = 0
        self._half_open_since: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    def is_open(self) -> bool:
        """
        True when calls must be blocked. In half-open state each call that
        gets through counts against the trial budget.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_at or 0.0)
                if elapsed < self.config.reset_timeout:
                    return True
                self._state = CircuitState.HALF_OPEN
                self._half_open_requests = 0
                self._half_open_since = self._clock()
                logger.info(f"Circuit half-open for {self.key}, allowing trial requests")

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_requests >= self.config.half_open_requests:
                    if self._clock() - (self._half_open_since or 0.0) < self.config.reset_timeout:
                        return True
                    logger.warning(f"Half-open trial calls for {self.key} never reported, allowing new ones")
                    self._half_open_requests = 0
                    self._half_open_since = self._clock()
                self._half_open_requests += 1

            return False

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call ended without a result."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_requests > 0:
                self._half_open_requests -= 1

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit closed for {self.key} after successful trial call")
            self._failures = 0
            self._state = CircuitState.CLOSED
            self._half_open_requests = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Circuit reopened for {self.key} after failed trial call",
                    extra={"circuit_key": self.key, "failures": self._failures}
                )
                return

            if self._state == CircuitState.CLOSED and self._failures >= self.config.threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Circuit opened for {self.key} after {self._failures} failures",
                    extra={
                        "circuit_key": self.key,
                        "threshold": self.config.threshold,
                        "reset_timeout": self.config.reset_timeout,
                    }
                )

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CircuitState.CLOSED
            self._half_open_requests = 0
            self._last_failure_at = None
        logger.info(f"Circuit manually reset for {self.key}")

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {"state": self._state.value, "failures": self._failures}
