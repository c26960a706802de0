"""
Relay Transport

Thin message-oriented wrapper around the relay WebSocket. The client
state machine only ever sees ``connect/send/recv/close`` and the
transport exceptions, so tests can swap in an in-memory transport.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .exceptions import ConnectionLost, TransportFailure

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 10.0
MAX_MESSAGE_SIZE = 4 * 1024 * 1024


class Transport(ABC):
    """One relay connection. Not reusable after close()."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Raises TransportFailure."""

    @abstractmethod
    async def send(self, text: str) -> None:
        """Send one text message. Raises ConnectionLost."""

    @abstractmethod
    async def recv(self) -> Union[str, bytes]:
        """Wait for the next message. Raises ConnectionLost."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""


TransportFactory = Callable[[], Transport]


class WebSocketTransport(Transport):
    """Relay connection over ``websockets``."""

    def __init__(
        self,
        url: str,
        origin: Optional[str] = None,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ):
        self.url = url
        self.origin = origin
        self.open_timeout = open_timeout
        self._ws = None

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.url,
                origin=self.origin,
                open_timeout=self.open_timeout,
                max_size=MAX_MESSAGE_SIZE,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("Relay connection to %s failed: %s", self.url, e)
            raise TransportFailure(f"Could not connect to {self.url}: {e}") from e

        logger.info("Connected to relay %s", self.url)

    async def send(self, text: str) -> None:
        if self._ws is None:
            raise ConnectionLost("Transport is not connected")
        try:
            await self._ws.send(text)
        except (ConnectionClosed, OSError) as e:
            raise ConnectionLost(f"Relay connection closed while sending: {e}") from e

    async def recv(self) -> Union[str, bytes]:
        if self._ws is None:
            raise ConnectionLost("Transport is not connected")
        try:
            return await self._ws.recv()
        except (ConnectionClosed, OSError) as e:
            raise ConnectionLost(f"Relay connection closed: {e}") from e

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except (WebSocketException, OSError) as e:
            logger.debug("Error while closing relay connection: %s", e)


def websocket_factory(url: str, origin: Optional[str] = None, open_timeout: float = DEFAULT_OPEN_TIMEOUT) -> TransportFactory:
    """Factory producing a fresh WebSocketTransport per connection attempt."""
    def factory() -> Transport:
        return WebSocketTransport(url, origin=origin, open_timeout=open_timeout)
    return factory
