"""In-memory channels and a scripted server for transport tests."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

from karaoke_realtime.sync.codec import MessageCodec
from karaoke_realtime.sync.config import RealtimeConfig
from karaoke_realtime.sync.exceptions import ChannelClosed, ConnectionFailedError, CredentialError
from karaoke_realtime.sync.interfaces import ChannelFactory, TransportChannel
from karaoke_realtime.sync.models import TopicUpdate


class FakeChannel(TransportChannel):
    """Channel whose peer is a ``FakeServer``."""

    def __init__(self, server: "FakeServer", token: Optional[str], index: int):
        self.server = server
        self.token = token
        self.index = index
        self.responsive = True
        self.pong_delay = 0.0
        self.sent: List[Dict[str, Any]] = []
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._closed = False

    async def send(self, frame: str) -> None:
        if self._closed:
            raise ChannelClosed(False, reason="channel closed")
        envelope = self.server.codec.decode(frame)
        message = {"event": envelope.event, "payload": envelope.payload, "priority": envelope.priority}
        self.sent.append(message)
        self.server.receive(self, message)

    async def recv(self) -> str:
        item = await self._inbound.get()
        if isinstance(item, ChannelClosed):
            self._closed = True
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._closed:
            self._closed = True
            self._inbound.put_nowait(ChannelClosed(False, code, reason or "client close"))

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: str, payload: Any = None) -> None:
        """Deliver a frame from the server."""
        if not self._closed:
            self._inbound.put_nowait(self.server.codec.encode(event, payload))

    def push_raw(self, raw: str) -> None:
        self._inbound.put_nowait(raw)

    def server_close(self, code: int = 1000, reason: str = "") -> None:
        """The server ends the session on purpose."""
        self._inbound.put_nowait(ChannelClosed(True, code, reason))

    def drop(self) -> None:
        """The network drops the connection."""
        self._inbound.put_nowait(ChannelClosed(False, 1006, "abnormal closure"))

    def events(self, name: str) -> List[Any]:
        return [m["payload"] for m in self.sent if m["event"] == name]


class FakeServer:
    """Answers handshakes, pings and sync checks the way the realtime server does."""

    def __init__(self):
        self.codec = MessageCodec(RealtimeConfig(compression_enabled=False))
        self.channels: List[FakeChannel] = []
        self.opens = 0
        self.fail_opens = 0
        self.reject_upgrade = False
        self.connect_error: Optional[str] = None
        self.accepted_tokens: Optional[List[str]] = None
        self.silent_handshake = False
        self.sync_checksums: Dict[str, Optional[str]] = {}
        self.answer_sync_checks = True
        self.on_message: Optional[Callable[[FakeChannel, Dict[str, Any]], None]] = None

    def receive(self, channel: FakeChannel, message: Dict[str, Any]) -> None:
        event = message["event"]
        payload = message["payload"] or {}

        if event == "connect":
            if self.silent_handshake:
                return
            token = payload.get("token")
            if self.connect_error:
                channel.push("connect_error", {"message": self.connect_error})
            elif self.accepted_tokens is not None and token not in self.accepted_tokens:
                channel.push("connect_error", {"message": "jwt expired"})
            else:
                channel.push("connected", {"id": f"socket-{channel.index}"})

        elif event == "ping" and channel.responsive:
            pong = {"timestamp": payload.get("timestamp"), "probeId": payload.get("probeId")}
            if channel.pong_delay:
                asyncio.get_running_loop().call_later(channel.pong_delay, channel.push, "pong", pong)
            else:
                channel.push("pong", pong)

        elif event == "sync_check_request" and self.answer_sync_checks:
            key = f"{payload['type']}_{payload['scopeId']}"
            channel.push("sync_check_response", {
                "type": payload["type"],
                "scopeId": payload["scopeId"],
                "checksum": self.sync_checksums.get(key, payload.get("checksum")),
                "requestId": payload["requestId"],
            })

        if self.on_message:
            self.on_message(channel, message)

    @property
    def latest(self) -> FakeChannel:
        return self.channels[-1]

    def open_channels(self) -> List[FakeChannel]:
        return [c for c in self.channels if not c.closed]

    def events(self, name: str) -> List[Any]:
        """Payloads of ``name`` received on any channel, in channel order."""
        return [p for c in self.channels for p in c.events(name)]


class FakeChannelFactory(ChannelFactory):
    """Opens ``FakeChannel`` instances against one ``FakeServer``."""

    def __init__(self, server: Optional[FakeServer] = None):
        self.server = server or FakeServer()
        self.tokens: List[Optional[str]] = []

    async def open(self, url: str, token: Optional[str], timeout: float) -> TransportChannel:
        self.server.opens += 1
        self.tokens.append(token)
        if self.server.fail_opens > 0:
            self.server.fail_opens -= 1
            raise ConnectionFailedError("connection refused")
        if self.server.reject_upgrade:
            raise CredentialError("HTTP 401 during upgrade")

        channel = FakeChannel(self.server, token, len(self.server.channels))
        self.server.channels.append(channel)
        return channel


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


def seed(merger, key, data: Any) -> None:
    """Cache a full snapshot for ``key`` as if the server had pushed it."""
    merger.apply(TopicUpdate(event=key.message_type, scopeId=key.scope_id, data=data))


def frame(event: str, payload: Any = None, **extra) -> str:
    """A raw inbound frame."""
    return json.dumps({"event": event, "payload": payload, **extra})
