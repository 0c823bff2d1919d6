"""
Tests for the transient-error circuit breaker.
"""

from unittest.mock import MagicMock

import pytest

from gridengine.execution.circuit_breaker import CircuitBreaker, CircuitBreakerConfig


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        CircuitBreakerConfig(error_threshold=3, cooldown_sec=5.0),
        log_event=lambda *a, **kw: None,
        clock=clock,
    )


class TestCircuitBreaker:
    """Tests for trip, cooldown and reset."""

    def test_trips_at_threshold(self, breaker):
        assert breaker.record_error("cycle", RuntimeError("a")) is False
        assert breaker.record_error("cycle", RuntimeError("b")) is False
        assert breaker.record_error("cycle", RuntimeError("c")) is True
        assert breaker.is_tripped
        assert breaker.cooldown_remaining == pytest.approx(5.0)

    def test_success_resets_streak(self, breaker):
        breaker.record_error("cycle", RuntimeError("a"))
        breaker.record_error("cycle", RuntimeError("b"))
        breaker.record_success()
        assert breaker.error_streak == 0
        assert breaker.record_error("cycle", RuntimeError("c")) is False

    def test_auto_reset_after_cooldown(self, breaker, clock):
        for _ in range(3):
            breaker.record_error("cycle", RuntimeError("x"))
        clock.now += 5.0
        assert breaker.is_tripped is False
        assert breaker.error_streak == 0

    def test_repeat_trips_back_off(self, breaker, clock):
        for _ in range(3):
            breaker.record_error("cycle", RuntimeError("x"))
        clock.now += 5.0
        assert not breaker.is_tripped
        for _ in range(3):
            breaker.record_error("cycle", RuntimeError("x"))
        assert breaker.trip_count == 2
        assert breaker.cooldown_remaining == pytest.approx(10.0)

    def test_callbacks(self, clock):
        on_trip, on_reset = MagicMock(), MagicMock()
        cb = CircuitBreaker(
            CircuitBreakerConfig(error_threshold=1, cooldown_sec=1.0),
            on_trip=on_trip,
            on_reset=on_reset,
            log_event=lambda *a, **kw: None,
            clock=clock,
        )
        cb.record_error("cycle", RuntimeError("x"))
        on_trip.assert_called_once()
        cb.force_reset()
        on_reset.assert_called_once()
        assert cb.get_state()["tripped"] is False

    def test_callback_error_contained(self, clock):
        cb = CircuitBreaker(
            CircuitBreakerConfig(error_threshold=1),
            on_trip=MagicMock(side_effect=RuntimeError("cb")),
            log_event=lambda *a, **kw: None,
            clock=clock,
        )
        assert cb.record_error("cycle", RuntimeError("x")) is True
