"""Tests for the circuit breaker state machine."""

from __future__ import annotations

import logging
import threading
from typing import List

import pytest

from cartographer_fog.circuit_breaker import (
    CLOSED,
    GEOMETRY_OPERATION,
    HALF_OPEN,
    OPEN,
    CircuitBreaker,
    CircuitBreakerOptions,
)
from cartographer_fog.diagnostics import SessionNotices
from cartographer_fog.errors import CircuitOpenError


class Boom(RuntimeError):
    pass


def _fail() -> None:
    raise Boom("geometry exploded")


def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(Boom):
            breaker.execute(_fail)


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    options = CircuitBreakerOptions(
        failure_threshold=3, recovery_timeout=10.0, failure_window=30.0, name="Test"
    )
    return CircuitBreaker(options, clock=clock)


def test_closed_breaker_passes_results_through(breaker):
    assert breaker.execute(lambda: 42) == 42
    assert breaker.state == CLOSED
    assert breaker.metrics().success_count == 1


def test_opens_after_threshold_and_fails_fast(breaker):
    _trip(breaker, 3)
    calls: List[int] = []

    with pytest.raises(CircuitOpenError, match="Circuit breaker Test is OPEN"):
        breaker.execute(lambda: calls.append(1))

    assert breaker.state == OPEN
    assert calls == []
    assert not breaker.can_execute()
    assert breaker.metrics().rejected_calls == 1


def test_failures_outside_window_do_not_accumulate(breaker, clock):
    _trip(breaker, 2)
    clock.advance(31.0)
    _trip(breaker, 1)

    assert breaker.state == CLOSED
    assert breaker.metrics().window_failures == 1


def test_success_resets_failure_window(breaker):
    _trip(breaker, 2)
    breaker.execute(lambda: None)
    _trip(breaker, 2)

    assert breaker.state == CLOSED


def test_single_trial_after_cooldown_closes_on_success(breaker, clock):
    _trip(breaker, 3)
    clock.advance(10.0)

    assert breaker.can_execute()
    assert breaker.execute(lambda: "ok") == "ok"
    assert breaker.state == CLOSED
    assert breaker.metrics().failure_count == 0


def test_trial_failure_reopens(breaker, clock):
    _trip(breaker, 3)
    clock.advance(10.0)

    _trip(breaker, 1)

    assert breaker.state == OPEN
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: None)
    clock.advance(10.0)
    assert breaker.can_execute()


def test_only_one_trial_runs_concurrently(breaker, clock):
    _trip(breaker, 3)
    clock.advance(10.0)
    entered = threading.Event()
    release = threading.Event()
    outcome: List[str] = []

    def slow_trial() -> str:
        entered.set()
        release.wait(2.0)
        return "trial"

    worker = threading.Thread(target=lambda: outcome.append(breaker.execute(slow_trial)))
    worker.start()
    assert entered.wait(2.0)

    assert breaker.state == HALF_OPEN
    assert not breaker.can_execute()
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: "second")

    release.set()
    worker.join(2.0)
    assert outcome == ["trial"]
    assert breaker.state == CLOSED


def test_open_notice_is_logged_once(clock, caplog):
    notices = SessionNotices(logging.getLogger("test.notices"))
    breaker = CircuitBreaker(
        CircuitBreakerOptions(failure_threshold=1, name="Quiet"), clock=clock, notices=notices
    )
    _trip(breaker, 1)

    with caplog.at_level(logging.WARNING, logger="test.notices"):
        for _ in range(5):
            with pytest.raises(CircuitOpenError):
                breaker.execute(lambda: None)

    messages = [r.getMessage() for r in caplog.records if r.name == "test.notices"]
    assert messages == ["Circuit breaker Quiet is OPEN - failing fast"]
    assert notices.suppressed_count(("circuit-open", "Quiet")) == 4


def test_reset_and_force_open(breaker):
    breaker.force_open()
    assert breaker.state == OPEN
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: None)

    breaker.reset()

    assert breaker.state == CLOSED
    assert breaker.metrics().total_calls == 0
    assert breaker.execute(lambda: 1) == 1


def test_geometry_preset_values():
    assert GEOMETRY_OPERATION.failure_threshold == 5
    assert GEOMETRY_OPERATION.recovery_timeout == 5.0
    assert GEOMETRY_OPERATION.failure_window == 15.0
    assert GEOMETRY_OPERATION.name == "GeometryOperation"


def test_invalid_threshold_rejected():
    with pytest.raises(ValueError):
        CircuitBreaker(CircuitBreakerOptions(failure_threshold=0))
