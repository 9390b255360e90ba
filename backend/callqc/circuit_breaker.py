"""
Circuit breaker for external providers.

Closed -> open after `failure_threshold` consecutive vendor failures; open
fails fast with CircuitOpen for `recovery_timeout` seconds; then one
half-open probe decides whether to close or re-open.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .errors import CircuitOpen, is_retryable

logger = logging.getLogger('callqc.circuit')

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """Thread-safe breaker; only retryable (vendor-side) errors count as failures."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self._state = CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        if self._state == OPEN and self.clock() - self._opened_at >= self.recovery_timeout:
            self._state = HALF_OPEN
            self._probe_in_flight = False
            logger.info(f"Circuit '{self.name}' half-open; allowing a probe")

    def _before_call(self) -> None:
        with self._lock:
            self._maybe_half_open()
            if self._state == OPEN:
                raise CircuitOpen(self.name, self.recovery_timeout - (self.clock() - self._opened_at))
            if self._state == HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpen(self.name, 0)
                self._probe_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CLOSED:
                logger.info(f"Circuit '{self.name}' closed after successful probe")
            self._state = CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._probe_in_flight = False

    def _on_failure(self, error: BaseException) -> None:
        with self._lock:
            self._probe_in_flight = False
            if not is_retryable(error):
                # Input errors say nothing about vendor health
                if self._state == HALF_OPEN:
                    self._state = CLOSED
                    self._failure_count = 0
                return
            self._failure_count += 1
            if self._state == HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = OPEN
                self._opened_at = self.clock()
                logger.warning(
                    f"Circuit '{self.name}' opened after {self._failure_count} failure(s): {error}"
                )

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute `func` through the breaker."""
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except CircuitOpen:
            raise
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._probe_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
            }
