"""Connection lifecycle states, reconnection backoff and generation-scoped timers."""

import asyncio
import random
from enum import Enum
from typing import Coroutine, Dict, Optional

from ..sync.logging_config import get_logger


class ConnectionState(Enum):
    """States of the logical connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    GIVEN_UP = "given_up"


class BackoffPolicy:
    """Exponential backoff with symmetric jitter.

    For a failure streak of length ``n`` the nominal delay is
    ``clamp(base * 2^n, base, max_delay)``; the returned delay is the nominal
    one perturbed by up to ``jitter_ratio`` either way and never exceeds
    ``max_delay``.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0,
                 jitter_ratio: float = 0.25, rng: Optional[random.Random] = None):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    def nominal_delay(self, attempts: int) -> float:
        """Delay before jitter for a failure streak of ``attempts``."""
        # Cap the exponent so large streaks cannot overflow
        exponential = self.base_delay * (2 ** min(max(attempts, 0), 32))
        return min(max(exponential, self.base_delay), self.max_delay)

    def delay(self, attempts: int) -> float:
        nominal = self.nominal_delay(attempts)
        jitter = self._rng.uniform(-self.jitter_ratio, self.jitter_ratio) * nominal
        return min(max(0.0, nominal + jitter), self.max_delay)


class TimerSet:
    """Named background tasks belonging to one epoch of a connection.

    Replacing a name cancels the previous task of that name. ``cancel_all``
    is synchronous so that nothing scheduled for an old epoch survives a
    disconnect.
    """

    def __init__(self, name: str = "timers"):
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}
        self.logger = get_logger(__name__)

    def spawn(self, name: str, coro: Coroutine) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.create_task(coro)
        self._tasks[name] = task
        task.add_done_callback(lambda t, key=name: self._forget(key, t))
        return task

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(f"Background task {self.name}/{name} failed: {task.exception()}")

    def get(self, name: str) -> Optional[asyncio.Task]:
        return self._tasks.get(name)

    def running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def cancel(self, name: str) -> bool:
        """Cancel one task; the currently running task is never cancelled by itself."""
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for name in list(self._tasks):
            if self.cancel(name):
                cancelled += 1
        return cancelled

    def names(self):
        return sorted(name for name, task in self._tasks.items() if not task.done())

    def __len__(self) -> int:
        return len(self.names())
