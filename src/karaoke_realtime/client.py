"""Public facade wiring the transport, synchronization and resilience components."""

from typing import Any, Dict, List, Optional, Tuple

from .events.dispatcher import EventDispatcher, Listener
from .sync.auditor import SynchronizationAuditor
from .sync.codec import MessageCodec
from .sync.config import RealtimeConfig
from .sync.exceptions import DataIntegrityError, ProtocolError, TransportError
from .sync.interfaces import ChannelFactory
from .sync.logging_config import get_logger, setup_transport_logging
from .sync.merger import IncrementalStateMerger
from .sync.models import (
    Connection, DomainEvent, OfflineMessage, PongMessage, Priority, ServerNotice,
    SyncCheckResponse, SyncCheckResult, TopicKey, TopicUpdate, now_ms
)
from .sync.resilience import ResilienceController
from .websocket.channel import WebSocketChannelFactory
from .websocket.manager import ConnectionManager, CredentialProvider
from .websocket.reconnection import ConnectionState, TimerSet


class RealtimeClient:
    """Real-time synchronization client for one viewer.

    Usage::

        async with RealtimeClient(config) as client:
            client.on("queue_update", render_queue)
            await client.connect(token)
            await client.join_scope("event", 5)

    Domain updates for the configured topic events are merged into a
    per-topic cache and delivered as full state. Outbound messages go out
    on the active connection or wait in the offline queue.
    """

    def __init__(self, config: Optional[RealtimeConfig] = None,
                 channel_factory: Optional[ChannelFactory] = None,
                 credential_provider: Optional[CredentialProvider] = None):
        self.config = config or RealtimeConfig()
        self.config.validate()
        setup_transport_logging(self.config.log_level)
        self.logger = get_logger(__name__)

        self.dispatcher = EventDispatcher()
        self.codec = MessageCodec(self.config)
        self.merger = IncrementalStateMerger()
        self.manager = ConnectionManager(
            self.config,
            channel_factory or WebSocketChannelFactory(self.config.max_payload_bytes),
            self.codec,
            credential_provider,
        )
        self.resilience = ResilienceController(self.config, self.dispatcher.emit)
        self.auditor = SynchronizationAuditor(
            self.config, self.merger, self.manager.send, self.dispatcher.emit
        )

        self._scopes: Dict[Tuple[str, str], Any] = {}
        self._timers = TimerSet("client")
        self._started = False

        self.manager.set_callbacks(
            on_open=self._on_open,
            on_message=self._on_message,
            on_close=self._on_close,
            on_failure=self._on_failure,
            on_given_up=self._on_given_up,
            on_credential_rejected=self._on_credential_rejected,
            on_switch=self._on_switch,
            on_pool_exhausted=self._on_pool_exhausted,
        )
        self.resilience.attach(self._probe_reconnect, self._deliver)

    # Lifecycle

    async def start(self) -> None:
        """Mark the client started. Connecting is explicit via ``connect()``."""
        if self._started:
            return
        self._started = True
        self.logger.info(f"Realtime client started for {self.config.server_url}")

    async def stop(self) -> None:
        """Disconnect and cancel every background task."""
        if not self._started:
            return
        self._started = False
        self.resilience.cancel_timers()
        self.auditor.stop()
        self._timers.cancel_all()
        await self.manager.disconnect()
        self.logger.info("Realtime client stopped")

    async def __aenter__(self) -> "RealtimeClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # Connection control

    async def connect(self, token: Optional[str] = None) -> bool:
        """Connect with ``token`` (or the stored or provided credential)."""
        self._started = True
        return await self.manager.connect(token)

    async def disconnect(self) -> None:
        """Cancel the timers of the current connection, then close it."""
        self.auditor.stop()
        self._timers.cancel_all()
        await self.manager.disconnect()

    async def reconnect(self) -> bool:
        """Manual reconnect from a fresh backoff."""
        self.auditor.stop()
        return await self.manager.reconnect()

    def reset_connection(self) -> None:
        """Clear a given-up or server-closed state so that ``connect()`` works again."""
        if not self.manager.is_connected:
            self.auditor.stop()
        self.manager.reset_connection()

    async def update_credential(self, token: str) -> bool:
        return await self.manager.update_credential(token)

    @property
    def is_connected(self) -> bool:
        return self.manager.is_connected

    # Outbound

    async def send(self, event: str, payload: Any = None,
                   priority: Priority = Priority.NORMAL,
                   retry_on_fail: bool = True) -> bool:
        """Send ``event`` now, or queue it for delivery after reconnecting.

        Returns True when the message went out on the active connection.

        Raises:
            ProtocolError: the frame exceeds the size limit
        """
        if not self.manager.is_connected or self.resilience.in_fallback:
            self.resilience.enqueue(event, payload, priority)
            self.logger.debug(f"Queued {event} for later delivery ({len(self.resilience.queue)} queued)")
            return False

        context_key = f"send_{event}"
        try:
            await self.manager.send(event, payload, priority)
        except ProtocolError:
            raise
        except TransportError as e:
            if not retry_on_fail:
                self.resilience.record_failure(context_key, e)
                self.logger.warning(f"Dropping {event} after send failure: {e}")
                return False

            retried = self.resilience.record_failure(
                context_key, e, lambda: self.send(event, payload, priority, retry_on_fail)
            )
            if not retried:
                self.resilience.enqueue(event, payload, priority)
            return False

        self.resilience.record_success(context_key)
        return True

    async def _deliver(self, message: OfflineMessage) -> bool:
        if not self.manager.is_connected:
            return False
        await self.manager.send(message.event, message.payload, message.priority)
        return True

    async def join_scope(self, scope: str, scope_id: Any) -> bool:
        """Join ``join_<scope>``; joined scopes are re-joined after every reconnect."""
        self._scopes[(scope, str(scope_id))] = scope_id
        if not self.manager.is_connected:
            return False
        return await self.send(f"join_{scope}", {f"{scope}Id": scope_id}, retry_on_fail=False)

    async def leave_scope(self, scope: str, scope_id: Any) -> bool:
        self._scopes.pop((scope, str(scope_id)), None)
        if not self.manager.is_connected:
            return False
        return await self.send(f"leave_{scope}", {f"{scope}Id": scope_id}, retry_on_fail=False)

    @property
    def joined_scopes(self) -> List[Tuple[str, str]]:
        return sorted(self._scopes)

    async def _rejoin_scopes(self) -> None:
        for (scope, _), scope_id in sorted(self._scopes.items()):
            try:
                await self.manager.send(f"join_{scope}", {f"{scope}Id": scope_id}, Priority.HIGH)
            except TransportError as e:
                self.logger.warning(f"Could not re-join {scope} {scope_id}: {e}")
                return
        if self._scopes:
            self.logger.info(f"Re-joined {len(self._scopes)} scopes")

    async def request_incremental_sync(self, message_type: str, scope_id: Any = None) -> bool:
        """Ask the server for the changes of a topic since its last snapshot."""
        key = TopicKey.of(message_type, scope_id)
        if not self.manager.is_connected:
            return False
        return await self.send("request_incremental_sync", {
            "type": key.message_type,
            "scopeId": key.scope_id,
            "since": self.merger.last_sync_ms(key),
        }, retry_on_fail=False)

    # Inbound

    def _on_message(self, connection: Connection, message: Any) -> None:
        if isinstance(message, TopicUpdate):
            self._handle_topic_update(message)
        elif isinstance(message, SyncCheckResponse):
            self.auditor.handle_response(message)
        elif isinstance(message, DomainEvent):
            self.dispatcher.emit(message.event, message.payload)
        elif isinstance(message, (PongMessage, ServerNotice)):
            # Consumed by the connection manager
            return
        else:
            raise ProtocolError(f"unhandled inbound message {type(message).__name__}")

    def _handle_topic_update(self, update: TopicUpdate) -> None:
        key = update.topic_key
        if self.resilience.in_fallback:
            self.logger.debug(f"Fallback mode, not dispatching {update.event} for {key}")
            return

        try:
            result = self.merger.apply(update)
        except DataIntegrityError as e:
            self.logger.warning(f"Integrity check failed for {key}: {e}")
            self.auditor.request_resync(key, "data_integrity_check_failed")
            return

        if result.needs_snapshot:
            self.auditor.request_resync(key, "missing_baseline")
            return

        if not update.is_incremental:
            self.auditor.on_snapshot(key)

        payload = {k: v for k, v in update.raw.items() if k != "changes"}
        payload.update(
            scopeId=key.scope_id,
            data=result.data,
            checksum=result.checksum,
            isIncremental=False,
        )
        self.dispatcher.emit(update.event, payload)

    # Manager callbacks

    def _on_open(self, connection: Connection) -> None:
        self.resilience.record_success("connect")
        self.auditor.start()
        self._timers.spawn("after_open", self._after_open())
        self.dispatcher.emit("connect", {
            "connectionId": connection.connection_id,
            "timestamp": now_ms(),
        })

    async def _after_open(self) -> None:
        await self._rejoin_scopes()
        await self.resilience.drain_offline_queue()

    def _on_close(self, reason: str, server_initiated: bool) -> None:
        self.auditor.stop()
        self.dispatcher.emit("disconnect", {
            "reason": reason,
            "serverInitiated": server_initiated,
            "timestamp": now_ms(),
        })

    def _on_failure(self, error: Exception) -> None:
        self.resilience.record_failure("connect", error)

    def _on_given_up(self, reason: str) -> None:
        self.auditor.stop()
        self.dispatcher.emit("given_up", {"reason": reason, "timestamp": now_ms()})
        if not self.manager.server_closed:
            self.resilience.enter_fallback("connection_given_up")

    def _on_credential_rejected(self, reason: str) -> None:
        self.dispatcher.emit("token_expired", {"reason": reason, "timestamp": now_ms()})

    def _on_switch(self, previous: Optional[Connection], current: Connection) -> None:
        self.dispatcher.emit("connection_switched", {
            "previous": previous.connection_id if previous else None,
            "current": current.connection_id,
            "timestamp": now_ms(),
        })
        self._timers.spawn("rejoin", self._rejoin_scopes())

    def _on_pool_exhausted(self) -> None:
        self.resilience.enter_fallback("all_pool_connections_failed")

    async def _probe_reconnect(self) -> bool:
        if self.manager.is_connected:
            return True
        if self.manager.state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING):
            return False
        return await self.manager.connect()

    # Subscriptions

    def on(self, event: str, listener: Listener) -> None:
        self.dispatcher.on(event, listener)

    def off(self, event: str, listener: Optional[Listener] = None) -> None:
        self.dispatcher.off(event, listener)

    # Cache and audit

    def get_cached(self, message_type: str, scope_id: Any = None) -> Optional[Any]:
        return self.merger.snapshot(TopicKey.of(message_type, scope_id))

    def clear_cache(self, message_type: Optional[str] = None, scope_id: Any = None) -> None:
        """Clear one topic's cache or, without a type, every topic."""
        if message_type is None:
            self.merger.clear()
            self.auditor.clear()
        else:
            self.merger.clear(TopicKey.of(message_type, scope_id))

    async def trigger_sync_check(self) -> List[SyncCheckResult]:
        if not self.manager.is_connected:
            self.logger.warning("Not connected, skipping sync check")
            return []
        return await self.auditor.trigger_check()

    def set_sync_check_options(self, enabled: bool, interval_seconds: Optional[float] = None) -> None:
        self.auditor.set_enabled(enabled, interval_seconds)

    def set_compression_options(self, enabled: bool, threshold: int = 1024) -> None:
        self.codec.set_options(enabled, threshold)

    # Pool

    def enable_connection_pool(self, size: int = 3, strategy: str = "health-based") -> None:
        self.manager.enable_pool(size, strategy)

    def disable_connection_pool(self) -> None:
        self.manager.disable_pool()

    # Status

    def get_connection_status(self) -> Dict[str, Any]:
        status = self.manager.get_status()
        status.update(
            fallback_mode=self.resilience.in_fallback,
            offline_queue_size=len(self.resilience.queue),
            joined_scopes=[f"{scope}_{scope_id}" for scope, scope_id in self.joined_scopes],
            cached_topics=[str(key) for key in self.merger.topics()],
            sync_check=self.auditor.get_status(),
            codec=self.codec.get_metrics(),
            events=self.dispatcher.get_metrics(),
        )
        return status

    def get_error_stats(self) -> Dict[str, Any]:
        return self.resilience.stats()

    def reset_error_stats(self) -> None:
        self.resilience.reset()
