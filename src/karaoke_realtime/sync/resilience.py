"""Failure classification, retry budgets and fallback mode."""

import asyncio
import random
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import RealtimeConfig
from .logging_config import get_logger
from .models import ErrorRecord, OfflineMessage, Priority
from .offline_queue import OfflineQueue


class ResilienceController:
    """Decides per failure whether to retry, escalate to fallback, or give up.

    Failures are counted per context key (``connect``, ``send_<event>`` ...).
    A key below the retry budget gets its operation rescheduled with
    exponential backoff; a key that reaches the fallback threshold switches
    the client into fallback mode, where real-time dispatch is suspended and
    a reconnect is probed periodically until it succeeds.
    """

    def __init__(self, config: RealtimeConfig,
                 emit: Callable[[str, Any], None],
                 queue: Optional[OfflineQueue] = None,
                 clock: Callable[[], float] = time.monotonic,
                 rng: Optional[random.Random] = None):
        self.config = config
        self._emit = emit
        self.queue = queue or OfflineQueue(config.offline_queue_capacity, config.offline_max_attempts)
        self._clock = clock
        self._rng = rng or random.Random()

        self._records: Dict[str, ErrorRecord] = {}
        self._fallback_mode = False
        self._fallback_context: Optional[str] = None
        self._fallback_since: Optional[datetime] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._retry_tasks: Dict[str, asyncio.Task] = {}

        self._reconnect: Optional[Callable[[], Awaitable[bool]]] = None
        self._deliver: Optional[Callable[[OfflineMessage], Awaitable[bool]]] = None

        self.logger = get_logger(__name__)

    def attach(self, reconnect: Callable[[], Awaitable[bool]],
               deliver: Callable[[OfflineMessage], Awaitable[bool]]) -> None:
        """Wire the reconnect probe and the offline-message delivery function."""
        self._reconnect = reconnect
        self._deliver = deliver

    @property
    def in_fallback(self) -> bool:
        return self._fallback_mode

    def retry_delay(self, count: int) -> float:
        """Backoff for the ``count``-th failure: ``min(base * 2^(n-1) * (1 + U[0, 0.3]), max)``."""
        exponential = self.config.retry_base_delay_seconds * (2 ** max(0, count - 1))
        jitter = self._rng.uniform(0.0, 0.3)
        return min(exponential * (1 + jitter), self.config.retry_max_delay_seconds)

    def _may_retry(self, record: ErrorRecord, previous_at: Optional[float], now: float) -> bool:
        if record.count > self.config.retry_max_attempts:
            return False
        if previous_at is not None and now - previous_at < self.config.retry_min_interval_seconds:
            return False
        return True

    def record_failure(self, context_key: str, error: Any,
                       retry_action: Optional[Callable[[], Awaitable[Any]]] = None) -> bool:
        """Record a failure for ``context_key``.

        Returns True when a retry of ``retry_action`` was scheduled, False
        when the caller should fall back to queueing or drop.
        """
        now = self._clock()
        record = self._records.get(context_key)
        if record is None:
            record = self._records[context_key] = ErrorRecord(context_key=context_key)

        previous_at = record.last_occurred_at
        record.count += 1
        record.last_occurred_at = now
        record.last_error = str(error)

        self.logger.warning(
            f"Failure in {context_key} (count {record.count}): {error}",
            extra={"event_type": "failure_recorded"}
        )

        if record.count >= self.config.fallback_threshold:
            self.enter_fallback(context_key)
            return False

        if retry_action is None or not self._may_retry(record, previous_at, now):
            return False

        delay = self.retry_delay(record.count)
        self.logger.info(f"Retrying {context_key} in {delay:.2f}s")
        self._schedule_retry(context_key, delay, retry_action)
        return True

    def _schedule_retry(self, context_key: str, delay: float,
                        retry_action: Callable[[], Awaitable[Any]]) -> None:
        previous = self._retry_tasks.pop(context_key, None)
        if previous and not previous.done():
            previous.cancel()
        self._retry_tasks[context_key] = asyncio.create_task(
            self._run_retry(context_key, delay, retry_action)
        )

    async def _run_retry(self, context_key: str, delay: float,
                         retry_action: Callable[[], Awaitable[Any]]) -> None:
        try:
            await asyncio.sleep(delay)
            await retry_action()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.logger.error(f"Retry of {context_key} failed: {e}")
        finally:
            if self._retry_tasks.get(context_key) is asyncio.current_task():
                del self._retry_tasks[context_key]

    def record_success(self, context_key: str) -> None:
        """Forget the failure history of ``context_key``."""
        if self._records.pop(context_key, None) is not None:
            self.logger.debug(f"Cleared failure record for {context_key}")

    def enter_fallback(self, context: str) -> None:
        """Switch into fallback mode and start probing for a reconnect."""
        if self._fallback_mode:
            return

        self._fallback_mode = True
        self._fallback_context = context
        self._fallback_since = datetime.now()
        self.logger.warning(
            f"Entering fallback mode (reason: {context}), real-time dispatch suspended",
            extra={"event_type": "fallback_enabled"}
        )
        self._emit("fallback_enabled", {"context": context, "timestamp": int(time.time() * 1000)})

        if self._reconnect is not None and (self._poll_task is None or self._poll_task.done()):
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        """Probe a reconnect every poll interval until one succeeds."""
        while self._fallback_mode:
            try:
                await asyncio.sleep(self.config.fallback_poll_interval_seconds)
                if not self._fallback_mode:
                    break

                self.logger.debug("Fallback probe: attempting reconnect")
                if await self._reconnect():
                    self._poll_task = None
                    await self.exit_fallback()
                    break
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.warning(f"Fallback probe failed: {e}")

    async def exit_fallback(self) -> None:
        """Resume dispatch, drain the offline queue, then announce recovery."""
        if not self._fallback_mode:
            return

        self._fallback_mode = False
        self._cancel_poll()
        # Fresh failure budget after recovery
        self._records.clear()

        duration = (datetime.now() - self._fallback_since).total_seconds() if self._fallback_since else 0.0
        self.logger.info(
            f"Leaving fallback mode after {duration:.1f}s (reason was: {self._fallback_context})",
            extra={"event_type": "fallback_disabled"}
        )
        self._fallback_context = None
        self._fallback_since = None

        await self.drain_offline_queue()
        self._emit("fallback_disabled", {"timestamp": int(time.time() * 1000)})

    def enqueue(self, event: str, payload: Any = None,
                priority: Priority = Priority.NORMAL) -> None:
        self.queue.enqueue(event, payload, priority)

    async def drain_offline_queue(self) -> int:
        """Deliver queued messages oldest-first with the configured spacing."""
        if self._deliver is None or self._fallback_mode:
            return 0
        return await self.queue.drain(self._deliver, self.config.drain_interval_seconds)

    def _cancel_poll(self) -> None:
        if self._poll_task and self._poll_task is not asyncio.current_task():
            self._poll_task.cancel()
        self._poll_task = None

    def cancel_timers(self) -> None:
        """Cancel pending retries and the fallback probe."""
        self._cancel_poll()
        for task in self._retry_tasks.values():
            task.cancel()
        self._retry_tasks.clear()

    def stats(self) -> Dict[str, Any]:
        """Error statistics snapshot."""
        return {
            "fallback_mode": self._fallback_mode,
            "fallback_context": self._fallback_context,
            "offline_queue_size": len(self.queue),
            "offline_queue": self.queue.stats(),
            "error_counts": {key: record.count for key, record in self._records.items()},
            "last_errors": {key: record.last_error for key, record in self._records.items()},
            "pending_retries": len(self._retry_tasks),
        }

    def reset(self) -> None:
        """Clear error records and the offline queue, and leave fallback mode."""
        self._records.clear()
        self.queue.clear()
        self.cancel_timers()
        if self._fallback_mode:
            self._fallback_mode = False
            self._fallback_context = None
            self._fallback_since = None
            self._emit("fallback_disabled", {"timestamp": int(time.time() * 1000)})
        self.logger.info("Error statistics reset")
