"""Circuit breaker for calls to the peer engine.

After ``failure_threshold`` consecutive failures the breaker opens and the
peer client stops sending steps until ``recovery_timeout`` has passed; then
a limited number of probe requests decide whether it closes again.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable

import structlog

log = structlog.get_logger()


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """Raised instead of contacting a peer whose breaker is open."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit breaker {name} open, retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max = half_open_max
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._probes = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self._recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            self._probes = 0
            log.info("circuit_breaker_half_open", name=self.name)
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def check(self) -> None:
        """Raise ``CircuitOpenError`` unless a request may go out now."""
        state = self.state
        if state == CircuitState.CLOSED:
            return
        if state == CircuitState.HALF_OPEN and self._probes < self._half_open_max:
            self._probes += 1
            return
        retry_in = max(0.0, self._recovery_timeout - (self._clock() - self._opened_at))
        raise CircuitOpenError(self.name, retry_in)

    def _publish(self) -> None:
        from tecdsa_engine.api.metrics import CIRCUIT_BREAKER_STATE

        CIRCUIT_BREAKER_STATE.labels(target=self.name).set(1 if self._state == CircuitState.OPEN else 0)

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            log.info("circuit_breaker_closed", name=self.name)
        self._failure_count = 0
        self._state = CircuitState.CLOSED
        self._publish()

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            log.warning("circuit_breaker_reopened", name=self.name)
        elif self._state == CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
            self._open()
            log.warning("circuit_breaker_opened", name=self.name, failures=self._failure_count)
        self._publish()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._probes = 0
        self._publish()
