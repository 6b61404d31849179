"""Circuit breaker guarding periodic background work against repeated failure."""

import asyncio
import inspect
import time
from enum import Enum
from typing import Callable, Any, Optional, Dict

from .exceptions import CircuitBreakerError
from .logging_config import get_logger


class CircuitState(Enum):
    """Breaker states."""
    CLOSED = "closed"
    OPEN = "open"  # cooling down, work is skipped
    HALF_OPEN = "half_open"  # next run is a trial


class CircuitBreaker:
    """Counts consecutive failures and pauses work for a cooldown window.

    After ``failure_threshold`` consecutive failures the circuit opens and
    every call is refused until ``cooldown_seconds`` have elapsed. The next
    call then runs as a trial: success closes the circuit, failure opens it
    for another full window.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 cooldown_seconds: float = 600.0,
                 name: str = "circuit_breaker",
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._success_count = 0
        self._total_calls = 0
        self._rejected_calls = 0

        self.logger = get_logger(f"{__name__}.{name}")

    def allow_request(self) -> bool:
        """Whether work may run now; moves OPEN to HALF_OPEN once the cooldown elapsed."""
        if self._state != CircuitState.OPEN:
            return True

        if self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self.logger.info(f"Circuit breaker {self.name} cooldown elapsed, allowing a trial run")
            return True

        self._rejected_calls += 1
        return False

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` (sync or async) unless the circuit is open.

        Raises:
            CircuitBreakerError: the circuit is open
            Exception: whatever ``func`` raised, counted as a failure
        """
        if not self.allow_request():
            raise CircuitBreakerError(self.name, self._failure_count, self.failure_threshold)

        self._total_calls += 1
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock() - self._opened_at >= self.cooldown_seconds

    def record_success(self) -> None:
        """Record a successful run."""
        self._success_count += 1

        if self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.CLOSED
            self.logger.info(f"Circuit breaker {self.name} closed after successful trial run")

        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        """Record a failed run, opening the circuit at the threshold."""
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN:
            self._open()
            self.logger.warning(f"Circuit breaker {self.name} reopened - trial run failed")
        elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            self._open()
            self.logger.warning(
                f"Circuit breaker {self.name} opened after {self._failure_count} consecutive failures, "
                f"pausing for {self.cooldown_seconds}s"
            )

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_calls": self._total_calls,
            "rejected_calls": self._rejected_calls,
            "failure_threshold": self.failure_threshold,
            "cooldown_seconds": self.cooldown_seconds,
            "cooldown_remaining": (
                max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))
                if self._state == CircuitState.OPEN and self._opened_at is not None else None
            )
        }
