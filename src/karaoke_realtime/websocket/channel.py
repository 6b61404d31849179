"""WebSocket channel implementation on top of the ``websockets`` asyncio client."""

import asyncio
from typing import Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from ..sync.exceptions import ChannelClosed, ConnectionFailedError, CredentialError
from ..sync.interfaces import ChannelFactory, TransportChannel
from ..sync.logging_config import get_logger


# Close codes that mean the server deliberately ended the session
DELIBERATE_CLOSE_CODES = {1000, 1008}


def is_server_initiated(exc: ConnectionClosed) -> bool:
    """Whether a close was initiated by the server on purpose.

    The server must have sent the first close frame, with a normal or
    policy code, or an application code in the 4000-4999 range. A 1001
    "going away" (restart, deploy) is not deliberate and is reconnected.
    """
    rcvd = exc.rcvd
    if rcvd is None:
        return False
    if exc.sent is not None and not exc.rcvd_then_sent:
        return False
    return rcvd.code in DELIBERATE_CLOSE_CODES or 4000 <= rcvd.code < 5000


def _closed_from(exc: ConnectionClosed) -> ChannelClosed:
    frame = exc.rcvd or exc.sent
    return ChannelClosed(
        server_initiated=is_server_initiated(exc),
        code=frame.code if frame else None,
        reason=frame.reason if frame else "",
    )


class WebSocketChannel(TransportChannel):
    """Adapts a ``websockets`` client connection to ``TransportChannel``."""

    def __init__(self, websocket: ClientConnection):
        self._websocket = websocket
        self._closed = False

    async def send(self, frame: str) -> None:
        try:
            await self._websocket.send(frame)
        except ConnectionClosed as e:
            self._closed = True
            raise _closed_from(e) from e

    async def recv(self) -> str:
        try:
            message = await self._websocket.recv()
        except ConnectionClosed as e:
            self._closed = True
            raise _closed_from(e) from e
        if isinstance(message, bytes):
            return message.decode("utf-8")
        return message

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._closed = True
        await self._websocket.close(code=code, reason=reason)

    @property
    def closed(self) -> bool:
        return self._closed


class WebSocketChannelFactory(ChannelFactory):
    """Opens ``WebSocketChannel`` instances with a bearer credential."""

    def __init__(self, max_size: int = 1024 * 1024):
        self.max_size = max_size
        self.logger = get_logger(__name__)

    async def open(self, url: str, token: Optional[str], timeout: float) -> TransportChannel:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            websocket = await connect(
                url,
                additional_headers=headers,
                open_timeout=timeout,
                max_size=self.max_size,
                # Liveness is handled by the heartbeat monitor
                ping_interval=None,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            if status in (401, 403):
                raise CredentialError(f"HTTP {status} during upgrade") from e
            raise ConnectionFailedError(f"HTTP {status} during upgrade") from e
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise ConnectionFailedError(f"{type(e).__name__}: {e}") from e

        self.logger.debug(f"Opened WebSocket channel to {url}")
        return WebSocketChannel(websocket)
