"""
Tests for the dispatch circuit breaker.
"""

import pytest

from genengine.services.circuit_breaker import CircuitBreaker, CircuitState


@pytest.fixture
def clock():
    return [0.0]


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, window_seconds=60, cooldown_seconds=30, clock=lambda: clock[0])


class TestCircuitBreaker:
    """State transitions driven by a fake clock."""

    def test_starts_closed(self, breaker):
        assert breaker.state == CircuitState.CLOSED
        assert breaker.allow_request() is True

    def test_opens_at_threshold(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.is_open()
        assert breaker.allow_request() is False

    def test_failures_outside_window_do_not_count(self, breaker, clock):
        breaker.record_failure()
        breaker.record_failure()
        clock[0] += 61
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_allows_single_probe(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock[0] += 30

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True
        assert breaker.allow_request() is False

    def test_probe_success_closes(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock[0] += 30
        breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["recent_failures"] == 0

    def test_probe_failure_reopens_and_restarts_cooldown(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock[0] += 30
        breaker.allow_request()

        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        clock[0] += 29
        assert breaker.state == CircuitState.OPEN
        clock[0] += 1
        assert breaker.state == CircuitState.HALF_OPEN

    def test_released_probe_can_be_claimed_again(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock[0] += 30
        assert breaker.allow_request() is True

        breaker.release_probe()
        assert breaker.allow_request() is True

    def test_late_success_does_not_close_open_breaker(self, breaker):
        for _ in range(3):
            breaker.record_failure()
        breaker.record_success()
        assert breaker.state == CircuitState.OPEN

    def test_status_reports_retry_delay(self, breaker, clock):
        for _ in range(3):
            breaker.record_failure()
        clock[0] += 10

        status = breaker.get_status()
        assert status["state"] == "open"
        assert status["retry_in_seconds"] == pytest.approx(20.0)
        assert status["failure_threshold"] == 3
