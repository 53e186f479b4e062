import enum
import logging
import threading
import time
from typing import Any, Callable


logger = logging.getLogger(__name__)


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit '{name}' is open; retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Consecutive-failure breaker guarding one upstream dependency.

    State only changes inside :meth:`call`. Exceptions listed in
    ``ignored_exceptions`` mean the dependency answered (e.g. a 4xx) and are
    counted as successes.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = float(recovery_timeout)
        self.ignored_exceptions = ignored_exceptions
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: float | None = None
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._clock() - self._opened_at >= self.recovery_timeout

    def _before_call(self) -> None:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return
            if not self._cooldown_elapsed():
                remaining = self.recovery_timeout - (self._clock() - (self._opened_at or 0.0))
                raise CircuitBreakerOpen(self.name, max(0.0, remaining))
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit %s HALF_OPEN (trial call)", self.name)

    def _on_success(self) -> None:
        with self._lock:
            self._total_successes += 1
            self._consecutive_failures = 0
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit %s CLOSED (recovered)", self.name)
            self._state = CircuitState.CLOSED
            self._opened_at = None

    def _on_failure(self) -> None:
        with self._lock:
            self._total_failures += 1
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit %s OPEN after %s consecutive failure(s)",
                        self.name,
                        self._consecutive_failures,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except self.ignored_exceptions:
            self._on_success()
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "state": self._current_state().value,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout_seconds": self.recovery_timeout,
                "total_failures": self._total_failures,
                "total_successes": self._total_successes,
            }
