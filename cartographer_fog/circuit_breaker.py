"""Failure-aware circuit breaker guarding the expensive fog calculation path."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from threading import RLock
from typing import Callable, List, Literal, Optional, TypeVar

from .config import (
    CIRCUIT_FAILURE_THRESHOLD,
    CIRCUIT_FAILURE_WINDOW_S,
    CIRCUIT_RECOVERY_TIMEOUT_S,
    GEOMETRY_CIRCUIT_FAILURE_THRESHOLD,
    GEOMETRY_CIRCUIT_FAILURE_WINDOW_S,
    GEOMETRY_CIRCUIT_RECOVERY_TIMEOUT_S,
)
from .diagnostics import SessionNotices
from .errors import CircuitOpenError

T = TypeVar("T")

CircuitState = Literal["CLOSED", "OPEN", "HALF_OPEN"]
CLOSED: CircuitState = "CLOSED"
OPEN: CircuitState = "OPEN"
HALF_OPEN: CircuitState = "HALF_OPEN"


@dataclass(slots=True, frozen=True)
class CircuitBreakerOptions:
    """Thresholds for a breaker; times are in seconds."""

    failure_threshold: int = CIRCUIT_FAILURE_THRESHOLD
    recovery_timeout: float = CIRCUIT_RECOVERY_TIMEOUT_S
    failure_window: float = CIRCUIT_FAILURE_WINDOW_S
    name: str = "FogCalculation"


FOG_CALCULATION = CircuitBreakerOptions()
GEOMETRY_OPERATION = CircuitBreakerOptions(
    failure_threshold=GEOMETRY_CIRCUIT_FAILURE_THRESHOLD,
    recovery_timeout=GEOMETRY_CIRCUIT_RECOVERY_TIMEOUT_S,
    failure_window=GEOMETRY_CIRCUIT_FAILURE_WINDOW_S,
    name="GeometryOperation",
)


@dataclass(slots=True)
class CircuitBreakerMetrics:
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: Optional[float]
    last_success_time: Optional[float]
    total_calls: int
    rejected_calls: int
    window_failures: int


class CircuitBreaker:
    """Stop calling an operation that keeps failing, then try again to detect recovery.

    ``CLOSED`` runs every call. Reaching ``failure_threshold`` failures inside
    ``failure_window`` seconds opens the circuit; while ``OPEN`` calls raise
    :class:`CircuitOpenError` without running. Once ``recovery_timeout`` has
    elapsed since the last failure a single trial call runs in ``HALF_OPEN``:
    success closes the circuit, failure re-opens it. The lock is never held
    while the guarded operation runs.
    """

    def __init__(
        self,
        options: Optional[CircuitBreakerOptions] = None,
        clock: Callable[[], float] = time.monotonic,
        notices: Optional[SessionNotices] = None,
    ) -> None:
        self.options = options or CircuitBreakerOptions()
        if self.options.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._clock = clock
        self._log = logging.getLogger(self.__class__.__name__)
        self._notices = notices or SessionNotices(self._log)
        self._lock = RLock()
        self._state: CircuitState = CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_calls = 0
        self._rejected_calls = 0
        self._last_failure: Optional[float] = None
        self._last_success: Optional[float] = None
        self._failure_times: List[float] = []
        self._trial_in_flight = False

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _recovery_due(self, now: float) -> bool:
        if self._last_failure is None:
            return True
        return now - self._last_failure >= self.options.recovery_timeout

    def _reject(self) -> CircuitOpenError:
        self._rejected_calls += 1
        self._notices.notice(
            ("circuit-open", self.name),
            logging.WARNING,
            "Circuit breaker %s is OPEN - failing fast",
            self.name,
        )
        return CircuitOpenError(self.name)

    def execute(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` under breaker protection and re-raise its errors."""

        with self._lock:
            self._total_calls += 1
            trial = False
            if self._state == OPEN:
                if not self._recovery_due(self._clock()) or self._trial_in_flight:
                    raise self._reject()
                self._state = HALF_OPEN
                self._log.debug("Circuit breaker %s attempting recovery", self.name)
            if self._state == HALF_OPEN:
                if self._trial_in_flight:
                    raise self._reject()
                self._trial_in_flight = True
                trial = True

        try:
            result = operation()
        except Exception:
            self._on_failure(trial)
            raise
        self._on_success(trial)
        return result

    def can_execute(self) -> bool:
        with self._lock:
            if self._state == CLOSED:
                return True
            if self._trial_in_flight:
                return False
            if self._state == HALF_OPEN:
                return True
            return self._recovery_due(self._clock())

    def _on_success(self, trial: bool) -> None:
        with self._lock:
            self._success_count += 1
            self._last_success = self._clock()
            self._failure_times.clear()
            if trial:
                self._trial_in_flight = False
            if self._state != CLOSED:
                self._state = CLOSED
                self._failure_count = 0
                self._log.info("Circuit breaker %s recovered - state: CLOSED", self.name)

    def _on_failure(self, trial: bool) -> None:
        with self._lock:
            now = self._clock()
            self._failure_count += 1
            self._last_failure = now
            self._failure_times.append(now)
            cutoff = now - self.options.failure_window
            self._failure_times = [ts for ts in self._failure_times if ts > cutoff]
            if trial:
                self._trial_in_flight = False
            if self._state == HALF_OPEN:
                self._state = OPEN
                self._log.warning(
                    "Circuit breaker %s failed during recovery - state: OPEN", self.name
                )
            elif (
                self._state == CLOSED
                and len(self._failure_times) >= self.options.failure_threshold
            ):
                self._state = OPEN
                self._log.warning(
                    "Circuit breaker %s opened due to %d failures - state: OPEN",
                    self.name,
                    len(self._failure_times),
                )

    def metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            return CircuitBreakerMetrics(
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                last_failure_time=self._last_failure,
                last_success_time=self._last_success,
                total_calls=self._total_calls,
                rejected_calls=self._rejected_calls,
                window_failures=len(self._failure_times),
            )

    def reset(self) -> None:
        """Return to CLOSED and forget all history."""

        with self._lock:
            self._state = CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._total_calls = 0
            self._rejected_calls = 0
            self._last_failure = None
            self._last_success = None
            self._failure_times = []
            self._trial_in_flight = False
        self._notices.forget(("circuit-open", self.name))
        self._log.debug("Circuit breaker %s reset to CLOSED state", self.name)

    def force_open(self) -> None:
        with self._lock:
            self._state = OPEN
            self._last_failure = self._clock()
        self._log.warning("Circuit breaker %s forced to OPEN state", self.name)


__all__ = [
    "CLOSED",
    "HALF_OPEN",
    "OPEN",
    "CircuitBreaker",
    "CircuitBreakerMetrics",
    "CircuitBreakerOptions",
    "CircuitState",
    "FOG_CALCULATION",
    "GEOMETRY_OPERATION",
]
