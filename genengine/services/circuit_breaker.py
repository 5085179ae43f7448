import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Stops dispatch into a generation pipeline that keeps failing.

    Closed: failures inside ``window_seconds`` are counted and reaching
    ``failure_threshold`` opens the breaker. Open: requests are refused until
    ``cooldown_seconds`` have elapsed, after which the breaker is half-open
    and lets a single probe through. The probe's outcome closes or reopens it.
    """

    def __init__(self, failure_threshold: int = 5, window_seconds: float = 60.0,
                 cooldown_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if (self._state == CircuitState.OPEN and self._opened_at is not None
                and self._clock() - self._opened_at >= self.cooldown_seconds):
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info("Circuit breaker cool-down elapsed, half-open")
        return self._state

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Whether one more job may be dispatched; claims the probe when half-open"""
        with self._lock:
            state = self._current_state()
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True
            return False

    def record_success(self):
        with self._lock:
            state = self._current_state()
            if state == CircuitState.OPEN:
                # Late result from a job dispatched before the trip
                return
            if state == CircuitState.HALF_OPEN:
                logger.info("Circuit breaker closed after successful probe")
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._opened_at = None
            self._probe_in_flight = False

    def record_failure(self):
        with self._lock:
            now = self._clock()
            state = self._current_state()
            if state == CircuitState.HALF_OPEN:
                self._trip(now, "probe failed")
                return
            if state == CircuitState.OPEN:
                return

            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window_seconds:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._trip(now, f"{len(self._failures)} failures within {self.window_seconds:.0f}s")

    def release_probe(self):
        """Free the half-open probe slot when the probe ended without an outcome"""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False

    def _trip(self, now: float, reason: str):
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._probe_in_flight = False
        self._failures.clear()
        logger.warning("Circuit breaker opened: %s", reason)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            state = self._current_state()
            retry_in = None
            if state == CircuitState.OPEN and self._opened_at is not None:
                retry_in = max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))
            return {
                "state": state.value,
                "recent_failures": len(self._failures),
                "failure_threshold": self.failure_threshold,
                "window_seconds": self.window_seconds,
                "cooldown_seconds": self.cooldown_seconds,
                "probe_in_flight": self._probe_in_flight,
                "retry_in_seconds": retry_in,
            }
