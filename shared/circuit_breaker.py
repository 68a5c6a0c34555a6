"""
Per-key circuit breaker over a sliding failure window.
"""

import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, Any

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Too many recent failures


class CircuitBreaker:
    """Tracks failures for one key and opens when too many land in the window.

    The circuit closes again on its own once old failures age out of the
    window, or immediately after a recorded success.
    """

    def __init__(self,
                 name: str,
                 failure_threshold: int = 3,
                 window_seconds: float = 300.0,
                 clock: Callable[[], float] = time.time):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: Deque[float] = deque()
        self._lock = threading.Lock()
        self.logger = get_logger("auth.circuit_breaker")

    def _prune(self, now: float):
        cutoff = now - self.window_seconds
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def record_failure(self) -> bool:
        """Record a failure; returns True if this failure opened the circuit."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            was_open = len(self._failures) >= self.failure_threshold
            self._failures.append(now)
            opened = not was_open and len(self._failures) >= self.failure_threshold

        if opened:
            self.logger.warning(
                "Circuit breaker opened due to failures",
                name=self.name,
                failure_count=len(self._failures),
                threshold=self.failure_threshold,
                window_seconds=self.window_seconds
            )
        return opened

    def record_success(self):
        """Forget recorded failures."""
        with self._lock:
            self._failures.clear()

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        with self._lock:
            self._prune(self._clock())
            return len(self._failures) >= self.failure_threshold

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        state = CircuitBreakerState.OPEN if self.is_open() else CircuitBreakerState.CLOSED
        return {
            "name": self.name,
            "state": state.value,
            "failure_count": len(self._failures),
            "failure_threshold": self.failure_threshold,
            "window_seconds": self.window_seconds
        }


class CircuitBreakerManager:
    """Manager for per-key circuit breakers."""

    def __init__(self,
                 failure_threshold: int = 3,
                 window_seconds: float = 300.0,
                 clock: Callable[[], float] = time.time):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self._clock = clock
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_circuit_breaker(self, name: str) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        with self._lock:
            breaker = self.circuit_breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    window_seconds=self.window_seconds,
                    clock=self._clock
                )
                self.circuit_breakers[name] = breaker
            return breaker

    def is_open(self, name: str) -> bool:
        breaker = self.circuit_breakers.get(name)
        return breaker is not None and breaker.is_open()

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in list(self.circuit_breakers.items())
        }
