"""Heartbeat monitoring of the active connection."""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from ..sync.config import RealtimeConfig
from ..sync.exceptions import TransportError
from ..sync.logging_config import get_logger, log_connection_event
from ..sync.models import Connection, PongMessage, now_ms


class HeartbeatMonitor:
    """Sends periodic pings on one connection and reports stalls.

    Every ping carries a ``probeId``; the matching pong gives the round-trip
    latency. When no pong has arrived for longer than the heartbeat timeout
    the monitor stops itself and calls ``on_stall`` with the connection it
    was watching.
    """

    def __init__(self, config: RealtimeConfig,
                 send: Callable[[Connection, str, Any], Awaitable[None]],
                 on_stall: Callable[[Connection], None],
                 on_ack: Optional[Callable[[Connection, float], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self._send = send
        self._on_stall = on_stall
        self._on_ack = on_ack
        self._clock = clock

        self._connection: Optional[Connection] = None
        self._task: Optional[asyncio.Task] = None
        self._last_ack: Optional[float] = None
        self._pending: Dict[str, float] = {}
        self._probes_sent = 0
        self._acks = 0

        self.logger = get_logger(__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    def start(self, connection: Connection) -> None:
        """Start monitoring ``connection``, replacing any previous one."""
        self.stop()
        self._connection = connection
        self._last_ack = self._clock()
        self._task = asyncio.create_task(self._heartbeat_loop(connection, connection.generation))
        log_connection_event(
            self.logger, connection.connection_id, connection.generation, "heartbeat_started",
            f"Heartbeat started, interval {self.config.heartbeat_interval_seconds}s"
        )

    def stop(self) -> None:
        """Cancel the heartbeat timer synchronously."""
        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()
        self._task = None
        self._connection = None
        self._pending.clear()

    def _is_current(self, connection: Connection, generation: int) -> bool:
        return (
            self._connection is connection
            and connection.generation == generation
            and connection.connected
        )

    async def _heartbeat_loop(self, connection: Connection, generation: int) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.heartbeat_interval_seconds)

                if not self._is_current(connection, generation):
                    break

                silence = self._clock() - self._last_ack
                if silence > self.config.heartbeat_timeout_seconds:
                    log_connection_event(
                        self.logger, connection.connection_id, generation, "timeout",
                        f"No pong for {silence:.1f}s, connection considered stalled"
                    )
                    self._task = None
                    self._connection = None
                    self._pending.clear()
                    self._on_stall(connection)
                    break

                await self._send_probe(connection)

            except asyncio.CancelledError:
                break
            except TransportError as e:
                # The reader task owns close handling
                self.logger.debug(f"Heartbeat ping not sent: {e}")
            except Exception as e:
                self.logger.error(f"Error in heartbeat loop: {e}")

    async def _send_probe(self, connection: Connection) -> None:
        probe_id = uuid.uuid4().hex
        sent_at = self._clock()
        self._prune(sent_at)
        self._pending[probe_id] = sent_at
        self._probes_sent += 1
        await self._send(connection, "ping", {"timestamp": now_ms(), "probeId": probe_id})

    def _prune(self, now: float) -> None:
        horizon = now - self.config.heartbeat_timeout_seconds
        for probe_id in [p for p, sent_at in self._pending.items() if sent_at < horizon]:
            del self._pending[probe_id]

    def handle_pong(self, connection: Connection, pong: PongMessage) -> bool:
        """Record a pong; returns False when it belongs to a connection not being watched."""
        if connection is not self._connection:
            return False

        now = self._clock()
        self._last_ack = now
        self._acks += 1
        connection.last_ack_at = time.time()

        latency_ms = None
        sent_at = self._pending.pop(pong.probe_id, None) if pong.probe_id else None
        if sent_at is not None:
            latency_ms = (now - sent_at) * 1000
        elif isinstance(pong.timestamp, (int, float)):
            latency_ms = max(0.0, now_ms() - pong.timestamp)

        if latency_ms is not None:
            connection.last_latency_ms = latency_ms
            if self._on_ack:
                self._on_ack(connection, latency_ms)
        return True

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "connection_id": self._connection.connection_id if self._connection else None,
            "probes_sent": self._probes_sent,
            "acks": self._acks,
            "pending_probes": len(self._pending),
            "seconds_since_ack": (
                round(self._clock() - self._last_ack, 3) if self._last_ack is not None and self.running else None
            ),
        }
