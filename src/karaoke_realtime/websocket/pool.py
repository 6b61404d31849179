"""Connection pool with health scoring and load-balanced selection."""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..sync.codec import MessageCodec
from ..sync.config import RealtimeConfig
from ..sync.exceptions import CredentialError, TransportError
from ..sync.logging_config import get_logger, log_connection_event
from ..sync.models import Connection, PongMessage, now_ms
from .reconnection import TimerSet


HEALTH_MAX = 100
LOW_LATENCY_MS = 100
MODERATE_LATENCY_MS = 300
MODERATE_FLOOR = 70
HIGH_LATENCY_FLOOR = 30


def score_health(current: int, latency_ms: Optional[float]) -> int:
    """New health for a probe result; ``None`` latency means timeout or disconnect."""
    if latency_ms is None:
        return 0
    if latency_ms < LOW_LATENCY_MS:
        return min(HEALTH_MAX, current + 10)
    if latency_ms < MODERATE_LATENCY_MS:
        return max(MODERATE_FLOOR, current)
    return max(HIGH_LATENCY_FLOOR, current - 5)


class ConnectionPool:
    """Keeps several independent connections and picks the active one.

    At most one connection has ``active=True`` at any time. Connections that
    fall below the retire floor are closed and replaced in the background;
    when none is usable the pool reports exhaustion instead of retrying
    silently.
    """

    def __init__(self, config: RealtimeConfig, codec: MessageCodec,
                 opener: Callable[[str], Awaitable[Connection]],
                 closer: Callable[[Connection], None],
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.codec = codec
        self._opener = opener
        self._closer = closer
        self._clock = clock

        self.size = max(1, min(config.pool_size, 10))
        self.strategy = config.load_balance_strategy
        self.connections: List[Connection] = []

        self._token: Optional[str] = None
        self._cursor = 0
        self._epoch = 0
        self._running = False
        self._probes: Dict[str, Tuple[Connection, asyncio.Future, float]] = {}
        self._timers = TimerSet("pool")
        self._replacement_seq = 0

        self._on_switch: Optional[Callable[[Optional[Connection], Connection], None]] = None
        self._on_exhausted: Optional[Callable[[], None]] = None

        self._metrics = {
            "health_checks": 0,
            "switches": 0,
            "retired": 0,
            "replaced": 0,
        }
        self.logger = get_logger(__name__)

    def set_switch_callback(self, callback: Callable[[Optional[Connection], Connection], None]) -> None:
        self._on_switch = callback

    def set_exhausted_callback(self, callback: Callable[[], None]) -> None:
        self._on_exhausted = callback

    @property
    def active(self) -> Optional[Connection]:
        for connection in self.connections:
            if connection.active:
                return connection
        return None

    @property
    def running(self) -> bool:
        return self._running

    async def initialize(self, token: str) -> Connection:
        """Open ``size`` connections and activate the best one.

        Raises the first error (credential errors first) when none opened.
        """
        self._token = token
        self._epoch += 1
        epoch = self._epoch

        results = await asyncio.gather(
            *(self._opener(token) for _ in range(self.size)),
            return_exceptions=True
        )

        opened = [r for r in results if isinstance(r, Connection)]
        errors = [r for r in results if isinstance(r, Exception)]

        if epoch != self._epoch:
            for connection in opened:
                self._closer(connection)
            raise asyncio.CancelledError()

        if not opened:
            credential_errors = [e for e in errors if isinstance(e, CredentialError)]
            raise (credential_errors or errors)[0]

        self.connections = opened
        self._running = True
        if errors:
            self.logger.warning(f"Pool opened {len(opened)}/{self.size} connections: {errors[0]}")
            for _ in errors:
                self._schedule_replacement()

        best = self.select_best() or opened[0]
        self._set_active(best)
        self.logger.info(
            f"Connection pool initialized with {len(opened)} connections, "
            f"strategy {self.strategy}, active {best.connection_id}"
        )
        return best

    def adopt(self, connection: Connection, token: str) -> None:
        """Build the pool around an already open connection, opening the rest in the background."""
        self._token = token
        self._epoch += 1
        self.connections = [connection]
        self._running = True
        self._set_active(connection)
        for _ in range(self.size - 1):
            self._schedule_replacement()
        self.logger.info(f"Connection pool adopted {connection.connection_id}, growing to {self.size}")

    def start_health_checks(self) -> None:
        self._running = True
        self._timers.spawn("health", self._health_loop(self._epoch))

    def stop(self) -> None:
        """Cancel health checks and replacements synchronously and forget all connections."""
        self._epoch += 1
        self._running = False
        self._timers.cancel_all()
        for _, future, _ in self._probes.values():
            if not future.done():
                future.cancel()
        self._probes.clear()
        for connection in self.connections:
            connection.active = False
        self.connections = []

    def is_usable(self, connection: Connection) -> bool:
        return connection.connected and connection.health > self.config.pool_usable_health

    def select_best(self, exclude: Optional[Connection] = None) -> Optional[Connection]:
        """Pick a connection with the configured strategy, ignoring unusable ones."""
        usable = [c for c in self.connections if c is not exclude and self.is_usable(c)]
        if not usable:
            return None

        if self.strategy == "round-robin":
            choice = usable[self._cursor % len(usable)]
            self._cursor += 1
            return choice

        if self.strategy == "least-connections":
            return min(usable, key=lambda c: c.sent_count)

        # Ties resolve to pool order
        return max(usable, key=lambda c: c.health)

    def update_health(self, connection: Connection, latency_ms: Optional[float]) -> int:
        previous = connection.health
        connection.health = score_health(previous, latency_ms)
        if latency_ms is not None:
            connection.last_latency_ms = latency_ms
        if connection.health != previous:
            self.logger.debug(
                f"Health of {connection.connection_id}: {previous} -> {connection.health}"
                + (f" (latency {latency_ms:.0f}ms)" if latency_ms is not None else " (no response)")
            )
        return connection.health

    async def probe(self, connection: Connection) -> Optional[float]:
        """Ping one connection and wait for its own pong; updates health either way."""
        if not connection.connected:
            self.update_health(connection, None)
            return None

        probe_id = f"pool-{uuid.uuid4().hex}"
        future = asyncio.get_running_loop().create_future()
        sent_at = self._clock()
        self._probes[probe_id] = (connection, future, sent_at)

        latency_ms = None
        try:
            await connection.channel.send(
                self.codec.encode("ping", {"timestamp": now_ms(), "probeId": probe_id})
            )
            connection.sent_count += 1
            latency_ms = await asyncio.wait_for(future, self.config.pool_probe_timeout_seconds)
        except asyncio.TimeoutError:
            log_connection_event(
                self.logger, connection.connection_id, connection.generation, "timeout",
                f"Pool probe timed out after {self.config.pool_probe_timeout_seconds}s"
            )
        except TransportError as e:
            self.logger.warning(f"Pool probe on {connection.connection_id} failed: {e}")
        finally:
            self._probes.pop(probe_id, None)

        self.update_health(connection, latency_ms)
        return latency_ms

    def resolve_probe(self, connection: Connection, pong: PongMessage) -> bool:
        """Match a pong to an outstanding pool probe on the same connection."""
        entry = self._probes.get(pong.probe_id) if pong.probe_id else None
        if entry is None:
            return False

        probed, future, sent_at = entry
        if probed is not connection:
            return False

        if not future.done():
            future.set_result((self._clock() - sent_at) * 1000)
        return True

    def record_latency(self, connection: Connection, latency_ms: float) -> None:
        """Feed a heartbeat round-trip into the health score."""
        if connection in self.connections:
            self.update_health(connection, latency_ms)

    async def _health_loop(self, epoch: int) -> None:
        while self._running and epoch == self._epoch:
            try:
                await asyncio.sleep(self.config.pool_health_check_interval_seconds)
                if epoch != self._epoch:
                    break
                await self.run_health_check()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in pool health check: {e}")

    async def run_health_check(self) -> None:
        """One health-check cycle: probe, retire, switch, replace."""
        epoch = self._epoch
        self._metrics["health_checks"] += 1

        for connection in self.connections:
            if not connection.connected:
                connection.health = 0

        await asyncio.gather(*(self.probe(c) for c in list(self.connections) if c.connected))
        if epoch != self._epoch:
            return

        previous = self.active

        for connection in list(self.connections):
            if connection is not previous and self._below_retire_floor(connection):
                self._retire(connection, "health below retire floor")

        if previous is None or not self.is_usable(previous):
            best = self.select_best(exclude=previous)
            if best is None:
                self._exhausted()
                return
            self._switch(best)
        elif self.strategy == "health-based":
            best = self.select_best()
            if (best is not None and best is not previous
                    and best.health - previous.health >= self.config.pool_switch_margin):
                self._switch(best)

        if previous is not None and previous is not self.active and self._below_retire_floor(previous):
            self._retire(previous, "health below retire floor after switch")

    def _below_retire_floor(self, connection: Connection) -> bool:
        return not connection.connected or connection.health < self.config.pool_retire_health

    def failover(self, lost: Connection) -> Optional[Connection]:
        """Handle loss of a connection; returns the new active one if any."""
        lost.connected = False
        lost.health = 0
        was_active = lost.active
        self._retire(lost, "connection lost")

        if not was_active:
            return None

        best = self.select_best()
        if best is None:
            self._exhausted()
            return None

        self._switch(best)
        return best

    def _exhausted(self) -> None:
        self.logger.warning("No usable pooled connection left")
        if self._on_exhausted:
            self._on_exhausted()

    def _set_active(self, connection: Connection) -> None:
        for candidate in self.connections:
            candidate.active = candidate is connection

    def _switch(self, connection: Connection) -> None:
        previous = self.active
        if previous is connection:
            return

        self._set_active(connection)
        self._metrics["switches"] += 1
        log_connection_event(
            self.logger, connection.connection_id, connection.generation, "switched",
            f"Switched active connection "
            f"{previous.connection_id if previous else None} -> {connection.connection_id} "
            f"(health {previous.health if previous else None} -> {connection.health})"
        )
        if self._on_switch:
            self._on_switch(previous, connection)

    def _retire(self, connection: Connection, reason: str) -> None:
        if connection not in self.connections:
            return

        self.connections.remove(connection)
        connection.active = False
        self._metrics["retired"] += 1
        log_connection_event(
            self.logger, connection.connection_id, connection.generation, "retired",
            f"Retired pooled connection: {reason} (health {connection.health})"
        )
        self._closer(connection)
        self._schedule_replacement()

    def _schedule_replacement(self) -> None:
        if not self._running:
            return
        self._replacement_seq += 1
        self._timers.spawn(f"replace-{self._replacement_seq}", self._replace(self._epoch))

    async def _replace(self, epoch: int) -> None:
        while self._running and epoch == self._epoch:
            try:
                await asyncio.sleep(self.config.pool_replace_delay_seconds)
                if epoch != self._epoch or len(self.connections) >= self.size:
                    break

                connection = await self._opener(self._token)
                if epoch != self._epoch:
                    self._closer(connection)
                    break

                self.connections.append(connection)
                self._metrics["replaced"] += 1
                self.logger.info(
                    f"Added replacement connection {connection.connection_id} "
                    f"({len(self.connections)}/{self.size})"
                )
                if self.active is None:
                    self._switch(connection)
                break
            except asyncio.CancelledError:
                break
            except CredentialError as e:
                self.logger.warning(f"Pool replacement stopped, credential rejected: {e}")
                break
            except Exception as e:
                self.logger.warning(f"Pool replacement failed, retrying: {e}")

    def status(self) -> Dict[str, Any]:
        """Pool status snapshot."""
        active = self.active
        return {
            "enabled": True,
            "size": self.size,
            "strategy": self.strategy,
            "current_connection": active.connection_id if active else None,
            "connections": [
                {
                    "connection_id": c.connection_id,
                    "generation": c.generation,
                    "health": c.health,
                    "connected": c.connected,
                    "active": c.active,
                    "sent_count": c.sent_count,
                    "last_latency_ms": c.last_latency_ms,
                }
                for c in self.connections
            ],
            "pending_replacements": len([n for n in self._timers.names() if n.startswith("replace-")]),
            **self._metrics,
        }
