"""Base interfaces for transport components."""

from abc import ABC, abstractmethod
from typing import Optional


class TransportChannel(ABC):
    """A single bidirectional text channel to the server."""

    @abstractmethod
    async def send(self, frame: str) -> None:
        """Send one text frame. Raises ``ChannelClosed`` if the channel is gone."""
        pass

    @abstractmethod
    async def recv(self) -> str:
        """Receive the next text frame. Raises ``ChannelClosed`` when the peer closes."""
        pass

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the channel from the client side."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the channel has been closed by either side."""
        pass


class ChannelFactory(ABC):
    """Opens transport channels against an endpoint."""

    @abstractmethod
    async def open(self, url: str, token: Optional[str], timeout: float) -> TransportChannel:
        """Open a channel.

        Raises:
            CredentialError: the server refused the credential during upgrade
            ConnectionFailedError: the endpoint could not be reached in time
        """
        pass
