"""Connection manager: lifecycle, handshake and reconnection of the logical connection."""

import asyncio
import inspect
import re
import uuid
from typing import Any, Callable, Dict, Optional, Union, Awaitable

from ..sync.codec import MessageCodec
from ..sync.config import LOAD_BALANCE_STRATEGIES, RealtimeConfig
from ..sync.exceptions import (
    ChannelClosed, ConnectionFailedError, CredentialError, ProtocolError
)
from ..sync.interfaces import ChannelFactory
from ..sync.logging_config import PerformanceTimer, get_logger, log_connection_event
from ..sync.models import Connection, PongMessage, Priority, ServerNotice
from .heartbeat import HeartbeatMonitor
from .pool import ConnectionPool
from .reconnection import BackoffPolicy, ConnectionState, TimerSet


CREDENTIAL_ERROR_PATTERN = re.compile(r"jwt|token|expired|unauthori[sz]ed", re.IGNORECASE)

CredentialProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


class ConnectionManager:
    """Owns the lifecycle of one logical connection to the realtime server.

    With pooling enabled the logical connection is whichever pooled
    connection is active; otherwise it is a single channel. Every physical
    connection is stamped with a generation, and every reader or timer
    checks that its generation is still live before acting.
    """

    def __init__(self, config: RealtimeConfig, channel_factory: ChannelFactory,
                 codec: Optional[MessageCodec] = None,
                 credential_provider: Optional[CredentialProvider] = None):
        self.config = config
        self.channel_factory = channel_factory
        self.codec = codec or MessageCodec(config)
        self.credential_provider = credential_provider
        self.logger = get_logger(__name__)

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.connection: Optional[Connection] = None
        self.pool: Optional[ConnectionPool] = None
        self.pool_enabled = config.pool_enabled

        self._token: Optional[str] = None
        self._server_closed = False
        self._awaiting_credential = False
        self._generation = 0
        self._epoch = 0
        self._live: Dict[int, Connection] = {}
        self._readers: Dict[int, asyncio.Task] = {}
        self._connect_task: Optional[asyncio.Task] = None
        self._timers = TimerSet("connection")

        self.backoff = BackoffPolicy(
            config.base_reconnect_delay_seconds,
            config.max_reconnect_delay_seconds,
            config.reconnect_jitter_ratio,
        )
        self.heartbeat = HeartbeatMonitor(
            config, self.send_on, self._on_heartbeat_stall, self._on_heartbeat_ack
        )

        # Callbacks
        self._open_callback: Optional[Callable[[Connection], None]] = None
        self._message_callback: Optional[Callable[[Connection, Any], None]] = None
        self._close_callback: Optional[Callable[[str, bool], None]] = None
        self._failure_callback: Optional[Callable[[Exception], None]] = None
        self._given_up_callback: Optional[Callable[[str], None]] = None
        self._credential_callback: Optional[Callable[[str], None]] = None
        self._switch_callback: Optional[Callable[[Optional[Connection], Connection], None]] = None
        self._exhausted_callback: Optional[Callable[[], None]] = None

        # Metrics
        self._total_connections = 0
        self._total_failures = 0

    def set_callbacks(self, on_open=None, on_message=None, on_close=None, on_failure=None,
                      on_given_up=None, on_credential_rejected=None, on_switch=None,
                      on_pool_exhausted=None) -> None:
        """Register lifecycle callbacks. All are invoked synchronously on the loop."""
        self._open_callback = on_open or self._open_callback
        self._message_callback = on_message or self._message_callback
        self._close_callback = on_close or self._close_callback
        self._failure_callback = on_failure or self._failure_callback
        self._given_up_callback = on_given_up or self._given_up_callback
        self._credential_callback = on_credential_rejected or self._credential_callback
        self._switch_callback = on_switch or self._switch_callback
        self._exhausted_callback = on_pool_exhausted or self._exhausted_callback

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.connection is not None

    @property
    def token(self) -> Optional[str]:
        return self._token

    @property
    def server_closed(self) -> bool:
        """Whether the server ended the session on purpose."""
        return self._server_closed

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Error in connection callback {getattr(callback, '__name__', callback)}: {e}")

    # Connecting

    async def connect(self, token: Optional[str] = None) -> bool:
        """Connect, or join the attempt already in flight.

        Returns True once connected. Returns False without connecting when no
        credential is available or the server closed the session on purpose.
        """
        if token:
            self._token = token

        if self.is_connected:
            return True

        if self._server_closed:
            self.logger.warning("Server closed the session; call reset_connection() before connecting")
            return False

        if self._connect_task is None or self._connect_task.done():
            if self.state == ConnectionState.GIVEN_UP:
                self.attempts = 0
            self._timers.cancel("reconnect")
            credential = self._token or await self._fresh_credential()
            if not credential:
                self.logger.warning("No credential available, not connecting")
                return False
            if self.is_connected:
                return True
            if self._connect_task is None or self._connect_task.done():
                self._token = credential
                self._connect_task = asyncio.create_task(self._attempt(credential))

        return await self._await_attempt(self._connect_task)

    async def _await_attempt(self, task: asyncio.Task) -> bool:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def _fresh_credential(self) -> Optional[str]:
        if self.credential_provider is None:
            return None
        try:
            result = self.credential_provider()
            if inspect.isawaitable(result):
                result = await result
            return result or None
        except Exception as e:
            self.logger.error(f"Credential provider failed: {e}")
            return None

    async def _attempt(self, token: str, credential_retry: bool = True) -> bool:
        """One connection attempt. Schedules the next one on failure."""
        epoch = self._epoch
        self.state = ConnectionState.CONNECTING if self.attempts == 0 else ConnectionState.RECONNECTING

        try:
            with PerformanceTimer(self.logger, "handshake", attempt=self.attempts + 1):
                if self.pool_enabled:
                    connection = await self._initialize_pool(token)
                else:
                    connection = await self.open_connection(token)
        except CredentialError as e:
            return await self._handle_credential_error(token, e, credential_retry)
        except ChannelClosed as e:
            if e.server_initiated:
                self._give_up(f"server closed during handshake: {e.reason or e.code}", server_closed=True)
                return False
            return self._handle_failure(e)
        except (ConnectionFailedError, ProtocolError) as e:
            return self._handle_failure(e)

        if epoch != self._epoch:
            self._retire(connection)
            return False

        self._activate(connection)
        return True

    async def _initialize_pool(self, token: str) -> Connection:
        if self.pool is not None:
            self.pool.stop()
        self.pool = self._new_pool()
        return await self.pool.initialize(token)

    def _new_pool(self) -> ConnectionPool:
        pool = ConnectionPool(self.config, self.codec, self.open_connection, self._retire)
        pool.set_switch_callback(self._on_pool_switch)
        pool.set_exhausted_callback(self._on_pool_exhausted)
        return pool

    async def open_connection(self, token: str) -> Connection:
        """Open a channel, perform the handshake and start its reader."""
        self._generation += 1
        generation = self._generation
        connection_id = f"conn-{generation}-{uuid.uuid4().hex[:8]}"

        channel = await self.channel_factory.open(
            self.config.server_url, token, self.config.connect_timeout_seconds
        )
        try:
            await asyncio.wait_for(self._handshake(channel, token), self.config.handshake_timeout_seconds)
        except asyncio.TimeoutError as e:
            await self._close_quietly(channel)
            raise ConnectionFailedError(
                f"handshake timed out after {self.config.handshake_timeout_seconds}s", connection_id
            ) from e
        except BaseException:
            await self._close_quietly(channel)
            raise

        connection = Connection(connection_id=connection_id, channel=channel, generation=generation)
        self._live[generation] = connection
        self._readers[generation] = asyncio.create_task(self._read_loop(connection))
        self._total_connections += 1

        log_connection_event(
            self.logger, connection_id, generation, "opened",
            f"Handshake completed for {connection_id}"
        )
        return connection

    async def _handshake(self, channel, token: str) -> None:
        await channel.send(self.codec.encode("connect", {"token": token}, Priority.HIGH))
        while True:
            envelope = self.codec.decode(await channel.recv())
            if envelope.event == "connected":
                return
            if envelope.event == "connect_error":
                payload = envelope.payload
                message = payload.get("message", "") if isinstance(payload, dict) else str(payload or "")
                if CREDENTIAL_ERROR_PATTERN.search(message):
                    raise CredentialError(message)
                raise ConnectionFailedError(f"handshake rejected: {message}")
            self.logger.debug(f"Ignoring {envelope.event} frame during handshake")

    async def _close_quietly(self, channel) -> None:
        try:
            await channel.close()
        except Exception as e:
            self.logger.debug(f"Error closing channel: {e}")

    def _activate(self, connection: Connection) -> None:
        connection.active = True
        self.connection = connection
        self.state = ConnectionState.CONNECTED
        self.attempts = 0
        self._awaiting_credential = False

        self.heartbeat.start(connection)
        if self.pool is not None:
            self.pool.start_health_checks()

        log_connection_event(
            self.logger, connection.connection_id, connection.generation, "connected",
            f"Connected to {self.config.server_url}",
            pooled=self.pool is not None
        )
        self._notify(self._open_callback, connection)

    # Failure handling

    async def _handle_credential_error(self, token: str, error: CredentialError,
                                       credential_retry: bool) -> bool:
        log_connection_event(
            self.logger, None, self._generation, "credential_rejected", str(error)
        )
        self._notify(self._credential_callback, error.details.get("reason", ""))

        fresh = await self._fresh_credential() if credential_retry else None
        if fresh and fresh != token:
            self.logger.info("Retrying with refreshed credential")
            self._token = fresh
            return await self._attempt(fresh, credential_retry=False)

        self.state = ConnectionState.DISCONNECTED
        self._awaiting_credential = True
        self.logger.warning("Credential rejected and no new credential available; waiting for update_credential()")
        return False

    def _handle_failure(self, error: Exception) -> bool:
        self.attempts += 1
        self._total_failures += 1
        log_connection_event(
            self.logger, None, self._generation, "error",
            f"Connection attempt {self.attempts} failed: {error}"
        )
        self._notify(self._failure_callback, error)

        if self.attempts >= self.config.max_reconnect_attempts:
            self._give_up(f"{self.attempts} failed attempts")
            return False

        self._schedule_reconnect()
        return False

    def _schedule_reconnect(self) -> None:
        delay = self.backoff.delay(self.attempts)
        self.state = ConnectionState.RECONNECTING
        self.logger.info(f"Reconnecting in {delay:.2f}s (attempt {self.attempts + 1}/{self.config.max_reconnect_attempts})")
        self._timers.spawn("reconnect", self._reconnect_after(delay, self._epoch))

    async def _reconnect_after(self, delay: float, epoch: int) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if epoch != self._epoch or self.state != ConnectionState.RECONNECTING:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._attempt(self._token))

    def _give_up(self, reason: str, server_closed: bool = False) -> None:
        self._timers.cancel("reconnect")
        self.state = ConnectionState.GIVEN_UP
        self._server_closed = self._server_closed or server_closed
        log_connection_event(self.logger, None, self._generation, "given_up", f"Giving up: {reason}")
        self._notify(self._given_up_callback, reason)

    # Reading

    async def _read_loop(self, connection: Connection) -> None:
        generation = connection.generation
        while True:
            try:
                raw = await connection.channel.recv()
            except asyncio.CancelledError:
                break
            except ChannelClosed as e:
                self._on_channel_lost(connection, e)
                break
            except Exception as e:
                self._on_channel_lost(connection, ChannelClosed(False, reason=str(e)))
                break

            if generation not in self._live:
                break

            try:
                message = self.codec.parse(raw)
            except ProtocolError as e:
                log_connection_event(
                    self.logger, connection.connection_id, generation, "rejected_frame", str(e)
                )
                continue

            try:
                self._route(connection, message)
            except Exception as e:
                self.logger.error(f"Error handling inbound message on {connection.connection_id}: {e}", exc_info=True)

    def _route(self, connection: Connection, message: Any) -> None:
        if isinstance(message, PongMessage):
            if self.pool is not None and self.pool.resolve_probe(connection, message):
                return
            self.heartbeat.handle_pong(connection, message)
            return

        if isinstance(message, ServerNotice):
            self._on_channel_lost(connection, ChannelClosed(True, reason=message.reason or message.event))
            self._close_in_background(connection)
            return

        # Only the active connection delivers domain messages
        if connection.active and connection is self.connection:
            self._notify(self._message_callback, connection, message)

    def _on_channel_lost(self, connection: Connection, closed: ChannelClosed) -> None:
        if self._live.pop(connection.generation, None) is None:
            return
        connection.connected = False
        self._readers.pop(connection.generation, None)

        log_connection_event(
            self.logger, connection.connection_id, connection.generation, "disconnected",
            f"Connection lost: {closed.message}",
            server_initiated=closed.server_initiated
        )

        if connection is not self.connection:
            if self.pool is not None:
                self.pool.failover(connection)
            return

        if closed.server_initiated:
            self._teardown(notify_reason=closed.reason or "server closed the connection", server_initiated=True)
            self._give_up("server-initiated close", server_closed=True)
            return

        if self.pool is not None and self.pool.failover(connection) is not None:
            return

        self._teardown(notify_reason=closed.reason or "connection lost", server_initiated=False)
        self._schedule_reconnect()

    def _teardown(self, notify_reason: str, server_initiated: bool) -> None:
        """Drop every live connection after losing the active one."""
        self.heartbeat.stop()
        if self.pool is not None:
            self.pool.stop()
            self.pool = None
        for connection in list(self._live.values()):
            self._retire(connection)
        self.connection = None
        self.state = ConnectionState.DISCONNECTED
        self._notify(self._close_callback, notify_reason, server_initiated)

    def _on_heartbeat_stall(self, connection: Connection) -> None:
        if connection.generation not in self._live:
            return
        if self.pool is not None:
            self.pool.update_health(connection, None)
        self._on_channel_lost(connection, ChannelClosed(False, reason="heartbeat timeout"))
        self._close_in_background(connection)

    def _on_heartbeat_ack(self, connection: Connection, latency_ms: float) -> None:
        if self.pool is not None:
            self.pool.record_latency(connection, latency_ms)

    def _on_pool_switch(self, previous: Optional[Connection], current: Connection) -> None:
        self.connection = current
        self.heartbeat.start(current)
        self._notify(self._switch_callback, previous, current)

    def _on_pool_exhausted(self) -> None:
        self._notify(self._exhausted_callback)

    # Sending

    async def send_on(self, connection: Connection, event: str, payload: Any = None,
                      priority: Priority = Priority.NORMAL) -> None:
        await connection.channel.send(self.codec.encode(event, payload, priority))
        connection.sent_count += 1

    async def send(self, event: str, payload: Any = None,
                   priority: Priority = Priority.NORMAL) -> None:
        """Send on the active connection.

        Raises:
            ConnectionFailedError: not connected
            ChannelClosed: the channel closed while sending
            ProtocolError: the frame is too large
        """
        connection = self.connection
        if not self.is_connected or connection is None:
            raise ConnectionFailedError("not connected")
        await self.send_on(connection, event, payload, priority)

    # Teardown

    def _retire(self, connection: Connection) -> None:
        """Forget a connection and close its channel in the background."""
        self._live.pop(connection.generation, None)
        connection.connected = False
        connection.active = False
        reader = self._readers.pop(connection.generation, None)
        if reader and reader is not asyncio.current_task():
            reader.cancel()
        self._close_in_background(connection)

    def _close_in_background(self, connection: Connection) -> None:
        if connection.channel.closed:
            return
        self._timers.spawn(f"close-{connection.generation}", self._close_quietly(connection.channel))

    def cancel_timers(self) -> None:
        """Synchronously cancel reconnect, heartbeat, pool and reader tasks of the current epoch."""
        self._epoch += 1
        self._timers.cancel("reconnect")
        if self._connect_task and not self._connect_task.done() and self._connect_task is not asyncio.current_task():
            self._connect_task.cancel()
        self._connect_task = None
        self.heartbeat.stop()
        if self.pool is not None:
            self.pool.stop()
        for generation, reader in list(self._readers.items()):
            if reader is not asyncio.current_task():
                reader.cancel()
        self._readers.clear()

    async def disconnect(self) -> None:
        """Cancel every timer, then close all channels. State becomes DISCONNECTED."""
        was_connected = self.is_connected
        self.cancel_timers()

        connections = list(self._live.values())
        self._live.clear()
        self.pool = None
        self.connection = None
        self.attempts = 0
        if self.state != ConnectionState.GIVEN_UP or not self._server_closed:
            self.state = ConnectionState.DISCONNECTED

        for connection in connections:
            connection.connected = False
            connection.active = False
            await self._close_quietly(connection.channel)

        if was_connected:
            log_connection_event(self.logger, None, self._generation, "disconnected", "Disconnected by client")
            self._notify(self._close_callback, "client disconnect", False)

    async def reconnect(self) -> bool:
        """Drop the current connection and connect again from a fresh backoff."""
        await self.disconnect()
        return await self.connect()

    def reset_connection(self) -> None:
        """Clear the given-up state and backoff; does not connect by itself."""
        self._server_closed = False
        self.attempts = 0
        if self.is_connected:
            return
        self.cancel_timers()
        self.state = ConnectionState.DISCONNECTED
        self.logger.info("Connection state reset")

    async def update_credential(self, token: str) -> bool:
        """Store a new credential; reconnect with it when a session exists or is being set up."""
        previous = self._token
        self._token = token
        active = self.state in (
            ConnectionState.CONNECTED, ConnectionState.CONNECTING, ConnectionState.RECONNECTING
        )

        if not active and not self._awaiting_credential:
            self.logger.info("Credential updated")
            return False

        if token == previous and self.is_connected:
            return True

        self.logger.info("Credential updated, reconnecting")
        await self.disconnect()
        self._token = token
        return await self.connect(token)

    def enable_pool(self, size: Optional[int] = None, strategy: Optional[str] = None) -> None:
        """Use pooled connections; a live connection becomes the first pool member."""
        if size is not None:
            self.config.pool_size = max(1, min(size, 10))
        if strategy is not None:
            if strategy not in LOAD_BALANCE_STRATEGIES:
                raise ValueError(f"Unknown load balance strategy: {strategy}")
            self.config.load_balance_strategy = strategy
        self.pool_enabled = True
        self.logger.info(
            f"Connection pool enabled: size {self.config.pool_size}, strategy {self.config.load_balance_strategy}"
        )

        if self.is_connected and self.pool is None:
            self.pool = self._new_pool()
            self.pool.adopt(self.connection, self._token)
            self.pool.start_health_checks()

    def disable_pool(self) -> None:
        """Keep only the active connection and stop pool health checks."""
        self.pool_enabled = False
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        keep = self.connection
        for connection in list(pool.connections):
            if connection is not keep:
                self._retire(connection)
        pool.stop()
        if keep is not None:
            keep.active = True

    def get_status(self) -> Dict[str, Any]:
        connection = self.connection
        return {
            "state": self.state.value,
            "connected": self.is_connected,
            "attempts": self.attempts,
            "max_attempts": self.config.max_reconnect_attempts,
            "server_closed": self._server_closed,
            "awaiting_credential": self._awaiting_credential,
            "connection_id": connection.connection_id if connection else None,
            "generation": connection.generation if connection else None,
            "live_connections": len(self._live),
            "total_connections": self._total_connections,
            "total_failures": self._total_failures,
            "heartbeat": self.heartbeat.get_metrics(),
            "pool": self.pool.status() if self.pool is not None else {"enabled": self.pool_enabled},
        }
