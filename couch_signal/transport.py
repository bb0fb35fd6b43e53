"""
Server side view of one signaling connection.

The registry, router and liveness monitor only talk to connections through
the small Transport interface defined here, which keeps them independent of
the websockets library.
"""

import logging
import time
from typing import Optional, Protocol, Union

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .protocol import Message, Role, encode

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the signaling core needs from a connection."""

    endpoint_id: Optional[str]
    role: Optional[Role]
    alive: bool
    last_seen: float

    @property
    def open(self) -> bool: ...

    def touch(self) -> None: ...

    async def send(self, message: Union[Message, str]) -> bool: ...

    async def ping(self) -> None: ...

    async def abort(self) -> None: ...


class WebSocketTransport:
    """
    Transport backed by a websockets ServerConnection.

    Holds the liveness state used by the LivenessMonitor: ``alive`` is
    cleared by every sweep and set again by the pong (or by any inbound
    frame).
    """

    def __init__(self, websocket: ServerConnection):
        self.websocket = websocket
        self.endpoint_id: Optional[str] = None
        self.role: Optional[Role] = None
        self.alive = True
        self.last_seen = time.time()

    def __repr__(self) -> str:
        return f"<WebSocketTransport {self.endpoint_id or '?'} {self.remote_address}>"

    @property
    def remote_address(self) -> str:
        address = self.websocket.remote_address
        if isinstance(address, tuple) and len(address) >= 2:
            return f"{address[0]}:{address[1]}"
        return str(address)

    @property
    def open(self) -> bool:
        return self.websocket.state is State.OPEN

    def touch(self) -> None:
        """Record inbound activity."""
        self.alive = True
        self.last_seen = time.time()

    async def send(self, message: Union[Message, str]) -> bool:
        """
        Send a message, returning False if the connection is already gone.
        """
        data = message if isinstance(message, str) else encode(message)
        try:
            await self.websocket.send(data)
            return True
        except ConnectionClosed:
            logger.debug("Send to %r skipped, connection closed", self)
            return False

    async def ping(self) -> None:
        """Send a protocol level ping frame; the pong marks us alive."""
        pong_waiter = await self.websocket.ping()
        pong_waiter.add_done_callback(self._on_pong)

    def _on_pong(self, waiter) -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            self.touch()

    async def abort(self) -> None:
        """Drop the connection without a closing handshake."""
        self.websocket.transport.abort()
