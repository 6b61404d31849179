"""Periodic verification of cached topics against the server's checksums."""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .circuit_breaker import CircuitBreaker, CircuitState
from .config import RealtimeConfig
from .exceptions import CircuitBreakerError, TransportError
from .logging_config import get_logger, log_sync_event
from .merger import IncrementalStateMerger
from .models import CachedTopic, SyncCheckResponse, SyncCheckResult, TopicKey, now_ms
from ..websocket.reconnection import TimerSet


class SynchronizationAuditor:
    """Compares stale cached topics with the server and requests resyncs.

    Each cycle sends a ``sync_check_request`` for every cached topic older
    than the staleness threshold. A mismatched checksum clears the topic
    and issues one ``request_data_resync``; further resync requests for the
    same topic are suppressed until a full snapshot arrives or the resync
    times out. Consecutive failed cycles open a circuit breaker that pauses
    auditing for the cooldown window.
    """

    def __init__(self, config: RealtimeConfig, merger: IncrementalStateMerger,
                 send: Callable[[str, Any], Awaitable[None]],
                 emit: Callable[[str, Any], None],
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.merger = merger
        self._send = send
        self._emit = emit
        self._clock = clock

        self.enabled = config.sync_check_enabled
        self.interval = config.sync_check_interval_seconds
        self.stale_after = config.sync_stale_after_seconds

        self.breaker = CircuitBreaker(
            failure_threshold=config.sync_failure_threshold,
            cooldown_seconds=config.sync_cooldown_seconds,
            name="sync_audit",
            clock=clock,
        )

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._pending: Dict[str, Tuple[TopicKey, asyncio.Future]] = {}
        self._resyncs: Dict[TopicKey, float] = {}
        self._timers = TimerSet("audit")

        self._stats = {
            "cycles": 0,
            "failed_cycles": 0,
            "skipped_cycles": 0,
            "checks": 0,
            "mismatches": 0,
            "resync_requests": 0,
        }
        self.logger = get_logger(__name__)

    # Lifecycle

    def start(self) -> None:
        """Start the periodic audit loop."""
        if self.running:
            self.logger.debug("Synchronization auditor is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._periodic_check())
        self.logger.info(
            f"Synchronization auditor started with interval: {self.interval}s, "
            f"stale after: {self.stale_after}s"
        )

    def stop(self) -> None:
        """Stop the audit loop and abandon outstanding checks and resyncs. Synchronous.

        Resync requests may have been lost with the connection, so the next
        connection is free to ask again.
        """
        self._running = False
        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None

        for _, future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        self._timers.cancel_all()
        self._resyncs.clear()

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def set_enabled(self, enabled: bool, interval: Optional[float] = None,
                    stale_after: Optional[float] = None) -> None:
        """Toggle auditing and change its timing at runtime."""
        self.enabled = enabled
        restart = False
        if interval is not None and interval > 0 and interval != self.interval:
            self.interval = interval
            restart = True
        if stale_after is not None and stale_after >= 0:
            self.stale_after = stale_after

        self.logger.info(
            f"Sync checks {'enabled' if enabled else 'disabled'}, interval: {self.interval}s"
        )
        if restart and self._running:
            self.stop()
            self.start()

    async def _periodic_check(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)

                if not self._running:
                    break
                if not self.enabled:
                    continue

                await self.run_cycle()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in periodic sync check: {e}", exc_info=True)

    # Checks

    async def trigger_check(self) -> List[SyncCheckResult]:
        """Run one audit cycle now, outside the schedule."""
        self.logger.info("Running manual sync check")
        return await self.run_cycle()

    async def run_cycle(self) -> List[SyncCheckResult]:
        """Check every stale topic once through the circuit breaker.

        A timeout or send error fails the whole cycle and yields no results.
        While the breaker is open the cycle is skipped.
        """
        self._expire_resyncs()
        in_flight = {key for key, _ in self._pending.values()}
        topics = [
            cached for cached in self.merger.stale_topics(self.stale_after)
            if cached.key not in in_flight and cached.key not in self._resyncs
        ]
        if not topics:
            return []

        try:
            return await self.breaker.call(self._audit, topics)
        except CircuitBreakerError as e:
            self._stats["skipped_cycles"] += 1
            self.logger.debug(f"Sync audit paused: {e}")
        except TransportError as e:
            self.logger.warning(f"Sync check cycle failed: {e}")
        return []

    async def _audit(self, topics: List[CachedTopic]) -> List[SyncCheckResult]:
        self._stats["cycles"] += 1
        outcomes = await asyncio.gather(
            *(self._check(cached) for cached in topics), return_exceptions=True
        )

        results = []
        errors = []
        for cached, outcome in zip(topics, outcomes):
            if isinstance(outcome, SyncCheckResult):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError):
                # Abandoned by stop()
                continue
            else:
                errors.append(f"{cached.key}: {outcome or type(outcome).__name__}")

        if errors:
            self._stats["failed_cycles"] += 1
            raise TransportError(
                f"{len(errors)} of {len(topics)} topics failed: {'; '.join(errors)}",
                "sync_cycle_failed", {"errors": errors}
            )

        if results:
            self.logger.debug(f"Sync check cycle completed: {len(results)} topics verified")

        return results

    async def _check(self, cached: CachedTopic) -> SyncCheckResult:
        key = cached.key
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (key, future)
        self._stats["checks"] += 1

        try:
            await self._send("sync_check_request", {
                "type": key.message_type,
                "scopeId": key.scope_id,
                "checksum": cached.checksum,
                "requestId": request_id,
            })
            response = await asyncio.wait_for(future, self.config.sync_check_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"sync check timed out after {self.config.sync_check_timeout_seconds}s",
                "sync_check_timeout", {"topic": str(key)}
            ) from e
        finally:
            self._pending.pop(request_id, None)

        local = self.merger.checksum_of(key)
        result = SyncCheckResult(
            topic_key=key,
            local_checksum=local,
            server_checksum=response.checksum,
            # A topic cleared meanwhile has nothing left to verify
            matched=local is None or local == response.checksum,
        )

        if result.matched:
            log_sync_event(self.logger, str(key), "verified", f"Checksum verified for {key}")
        else:
            self._stats["mismatches"] += 1
            log_sync_event(
                self.logger, str(key), "mismatch",
                f"Checksum mismatch for {key}, clearing cache",
                local_checksum=local, server_checksum=response.checksum
            )
            self.merger.clear(key)
            self.request_resync(key, "checksum_mismatch")

        return result

    def handle_response(self, response: SyncCheckResponse) -> bool:
        """Resolve the pending check a response belongs to."""
        entry = self._pending.get(response.request_id) if response.request_id else None

        if entry is None:
            # Servers that do not echo requestId are matched by topic
            key = response.topic_key
            entry = next(
                (item for item in self._pending.values() if item[0] == key and not item[1].done()),
                None
            )

        if entry is None or entry[1].done():
            self.logger.debug(f"Ignoring unsolicited sync check response for {response.topic_key}")
            return False

        entry[1].set_result(response)
        return True

    # Resync bookkeeping

    def request_resync(self, key: TopicKey, reason: str) -> bool:
        """Ask the server for a full snapshot of ``key`` unless one is already pending."""
        self._expire_resyncs()
        if key in self._resyncs:
            log_sync_event(self.logger, str(key), "resync_suppressed", f"Resync for {key} already in flight")
            return False

        self._resyncs[key] = self._clock()
        self._stats["resync_requests"] += 1
        log_sync_event(self.logger, str(key), "resync_requested", f"Requesting resync of {key} ({reason})")
        self._timers.spawn(f"resync-{key}", self._send_resync(key, reason))
        return True

    async def _send_resync(self, key: TopicKey, reason: str) -> None:
        try:
            await self._send("request_data_resync", {
                "type": key.message_type,
                "scopeId": key.scope_id,
                "reason": reason,
            })
        except asyncio.CancelledError:
            self._resyncs.pop(key, None)
            raise
        except TransportError as e:
            # Not sent, so a later trigger may ask again
            self._resyncs.pop(key, None)
            self.logger.warning(f"Resync request for {key} not sent: {e}")
            return

        self._emit("resync_requested", {
            "type": key.message_type,
            "scopeId": key.scope_id,
            "reason": reason,
            "timestamp": now_ms(),
        })

    def on_snapshot(self, key: TopicKey) -> None:
        """A full snapshot for ``key`` arrived; its resync is complete."""
        if self._resyncs.pop(key, None) is not None:
            log_sync_event(self.logger, str(key), "resync_completed", f"Resync of {key} completed")

    def _expire_resyncs(self) -> None:
        now = self._clock()
        expired = [
            key for key, since in self._resyncs.items()
            if now - since >= self.config.resync_timeout_seconds
        ]
        for key in expired:
            del self._resyncs[key]
            log_sync_event(self.logger, str(key), "resync_timeout", f"Resync of {key} timed out")

    def clear(self) -> None:
        """Forget every in-flight resync, e.g. after the cache was cleared."""
        self._resyncs.clear()

    def get_status(self) -> Dict[str, Any]:
        self._expire_resyncs()
        return {
            "enabled": self.enabled,
            "running": self.running,
            "interval_seconds": self.interval,
            "stale_after_seconds": self.stale_after,
            "paused": self.breaker.state == CircuitState.OPEN,
            "pending_checks": len(self._pending),
            "pending_resyncs": sorted(str(key) for key in self._resyncs),
            "circuit_breaker": self.breaker.get_metrics(),
            **self._stats,
        }
