"""
Host side session.

Registers as a host, waits for a controller's offer and answers it. Each
new offer replaces the current peer connection, so the most recent
controller wins. Frames go out with send_frame(); input events arriving
from the controller are parsed and handed to ``on_input``. Capturing the
screen and injecting the events are left to the caller.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import ValidationError

from . import protocol
from .client import DEFAULT_PING_INTERVAL, ConnectionState, EventKind, Session, SignalingClient
from .input_events import InputEvent
from .peer import HostPeerConnection, PeerError
from .protocol import HOST_ID_PREFIX, Message, MessageType, Role

logger = logging.getLogger(__name__)


class HostSession(SignalingClient):
    """
    State machine for a host.

    disconnected -> connecting -> registered -> connected, back to
    registered when the controller's peer connection fails, and to
    disconnected on signaling loss or disconnect().

    Args:
        host_id: Id to register with; must start with ``host-`` to show up
            in controllers' rosters
        ice_servers: STUN/TURN urls handed to the peer connection
        ping_interval: Seconds between application level pings
        peer_factory: Builds the peer connection from ``ice_servers``
        connector: Opens the signaling socket for a url
        on_state_change: Called with the new ConnectionState
        on_error: Called with a user facing error message
        on_input: Called with each InputEvent from the controller
    """

    role = Role.HOST

    def __init__(
        self,
        host_id: str,
        ice_servers: Optional[List[str]] = None,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        peer_factory: Optional[Callable[[List[str]], HostPeerConnection]] = None,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_input: Optional[Callable[[InputEvent], None]] = None,
    ):
        if not protocol.is_host_id(host_id):
            logger.warning("Host id %s lacks the %r prefix, controllers will not list it",
                           host_id, HOST_ID_PREFIX)
        super().__init__(
            host_id,
            ice_servers=ice_servers,
            ping_interval=ping_interval,
            peer_factory=peer_factory or HostPeerConnection,
            connector=connector,
            on_state_change=on_state_change,
            on_error=on_error,
        )
        self.on_input = on_input

    @property
    def controller_id(self) -> Optional[str]:
        """Id of the controller whose offer was answered last."""
        return self._session.remote_id if self._session else None

    def send_frame(self, data: bytes) -> bool:
        """Send one encoded frame to the controller; False if no frames channel is open."""
        session = self._session
        if session is None or session.peer is None:
            return False
        return session.peer.send_frame(data)

    # ---------- event handling ----------

    async def _handle_message(self, session: Session, message: Message) -> None:
        kind = message.type

        if kind is MessageType.REGISTERED:
            if self.state is ConnectionState.CONNECTING:
                logger.info("Registered as %s, waiting for a controller", message.id or self.client_id)
                self._set_state(ConnectionState.REGISTERED)

        elif kind is MessageType.OFFER:
            await self._handle_offer(session, message)

        elif kind is MessageType.ICE_CANDIDATE:
            await self._handle_remote_candidate(session, message)

        elif kind is MessageType.ERROR:
            self._report_error(message.text or "Unknown error")

        elif kind in (MessageType.PONG, MessageType.HOSTS, MessageType.HOSTS_UPDATED,
                      MessageType.HOST_DISCONNECTED):
            pass

        elif kind is MessageType.ANSWER:
            logger.warning("Ignoring answer from %s, hosts only send answers", message.from_)

        else:
            logger.warning("Unknown message type: %s", message.type_name)

    async def _handle_offer(self, session: Session, message: Message) -> None:
        if self.state is ConnectionState.CONNECTING:
            logger.warning("Ignoring offer from %s, not registered yet", message.from_)
            return
        if not message.from_:
            logger.warning("Ignoring offer without a sender")
            return

        logger.info("Received offer from %s", message.from_)
        if session.peer is not None:
            await self._close_peer(session)
            self._set_state(ConnectionState.REGISTERED)

        session.remote_id = message.from_
        peer = self._new_peer(session)
        peer.on_input = lambda data: session.post(EventKind.INPUT, (peer, data))
        session.peer = peer

        try:
            answer = await peer.create_answer(message.payload)
        except PeerError as e:
            await self._close_peer(session)
            session.remote_id = None
            self._report_error(f"Failed to answer offer from {message.from_}: {e}")
            return

        await self._send(session, Message(type=MessageType.ANSWER, target=message.from_, payload=answer))
        logger.info("Answer sent to %s", message.from_)

    async def _handle_peer_event(self, session: Session, kind: EventKind, value: Any) -> None:
        if kind is EventKind.PEER_STATE:
            await self._handle_peer_state(session, value)
        elif kind is EventKind.INPUT:
            self._handle_input(value)

    async def _handle_peer_state(self, session: Session, state: str) -> None:
        if state == "connected":
            if self.state is ConnectionState.REGISTERED:
                logger.info("Peer connected to %s", session.remote_id)
                self._set_state(ConnectionState.CONNECTED)
        elif state in ("failed", "disconnected", "closed"):
            logger.info("Peer connection to %s %s", session.remote_id, state)
            await self._close_peer(session)
            session.remote_id = None
            self._set_state(ConnectionState.REGISTERED)

    def _handle_input(self, data: str) -> None:
        try:
            event = InputEvent.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid input event: %s", e.errors()[0]["msg"])
            return
        if self.on_input:
            self.on_input(event)
