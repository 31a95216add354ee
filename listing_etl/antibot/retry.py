"""Circuit breaker and identity-rotation cadence."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple, Type, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # probing after the cool-down


class CircuitOpenError(RuntimeError):
    """Raised instead of calling through while the circuit is open."""


@dataclass
class CircuitBreakerConfig:
    """Thresholds for tripping and re-closing the portal circuit."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 60.0  # cool-down before a probe is allowed
    expected_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


class CircuitBreaker:
    """Stops calling the portal after repeated failures until a cool-down passes.

    Parameters
    ----------
    config : CircuitBreakerConfig, optional
        Thresholds; defaults apply when omitted
    clock : callable
        Monotonic time source
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.reset()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Invoke ``func`` unless the circuit is open.

        Raises
        ------
        CircuitOpenError
            While open and still inside the cool-down
        """
        if self.state is CircuitState.OPEN:
            waited = self._clock() - (self.opened_at or 0.0)
            if waited < self.config.timeout:
                raise CircuitOpenError(
                    f"portal circuit OPEN after {self.failure_count} failures, "
                    f"next probe in {self.config.timeout - waited:.0f}s"
                )
            LOGGER.info("Portal circuit cool-down elapsed, probing")
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0

        try:
            outcome = func(*args, **kwargs)
        except self.config.expected_exceptions:
            self._record_failure()
            raise
        self._record_success()
        return outcome

    def _record_success(self) -> None:
        if self.state is not CircuitState.HALF_OPEN:
            self.failure_count = 0
            return
        self.success_count += 1
        if self.success_count >= self.config.success_threshold:
            LOGGER.info("Portal circuit closed after %d good probes", self.success_count)
            self.reset()

    def _record_failure(self) -> None:
        self.failure_count += 1
        if self.state is CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            if self.state is not CircuitState.OPEN:
                LOGGER.warning("Portal circuit opened (%d failures)", self.failure_count)
            self.state = CircuitState.OPEN
            self.opened_at = self._clock()
            self.success_count = 0

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None

    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN


class RotationCadence:
    """Calls ``rotate`` after every ``every`` ticks.

    Owned by a single worker or discovery thread; the lock only guards the
    counter when a cadence is shared.
    """

    def __init__(self, rotate: Callable[[], None], every: int) -> None:
        if every < 1:
            raise ValueError("rotation cadence must be at least 1")
        self._rotate = rotate
        self.every = every
        self.ticks = 0
        self.rotations = 0
        self._lock = threading.Lock()

    def tick(self) -> bool:
        """Record one unit of work; returns True when a rotation was triggered."""
        with self._lock:
            self.ticks += 1
            due = self.ticks % self.every == 0
        if due:
            LOGGER.debug("Rotating identity after %d ticks", self.ticks)
            self._rotate()
            self.rotations += 1
        return due
