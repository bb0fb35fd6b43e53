"""
Controller side session orchestrator.

Drives one controller through registration, host discovery and the
offer/answer/ICE exchange until the peer connection reports connected, and
back to ``disconnected`` on any failure.
"""

import logging
from typing import Any, Awaitable, Callable, List, Optional

from . import protocol
from .client import DEFAULT_PING_INTERVAL, ConnectionState, EventKind, Session, SignalingClient
from .input_events import InputEvent
from .peer import PeerConnection, PeerError
from .protocol import HostInfo, Message, MessageType, Role

logger = logging.getLogger(__name__)

__all__ = ["ConnectionState", "SessionOrchestrator"]


class SessionOrchestrator(SignalingClient):
    """
    State machine for a controller session.

    Args:
        client_id: Controller id to register with; generated if omitted
        ice_servers: STUN/TURN urls handed to the peer connection
        ping_interval: Seconds between application level pings
        peer_factory: Builds the peer connection from ``ice_servers``
        connector: Opens the signaling socket for a url
        on_state_change: Called with the new ConnectionState
        on_hosts: Called with the updated host roster
        on_error: Called with a user facing error message
        on_frame: Called with each frame received from the host
    """

    role = Role.CONTROLLER

    def __init__(
        self,
        client_id: Optional[str] = None,
        ice_servers: Optional[List[str]] = None,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        peer_factory: Optional[Callable[[List[str]], PeerConnection]] = None,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_hosts: Optional[Callable[[List[HostInfo]], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_frame: Optional[Callable[[bytes], None]] = None,
    ):
        super().__init__(
            client_id or protocol.new_controller_id(),
            ice_servers=ice_servers,
            ping_interval=ping_interval,
            peer_factory=peer_factory or PeerConnection,
            connector=connector,
            on_state_change=on_state_change,
            on_error=on_error,
        )
        self.on_hosts = on_hosts
        self.on_frame = on_frame
        self.hosts: List[HostInfo] = []

    @property
    def target_host_id(self) -> Optional[str]:
        return self._session.remote_id if self._session else None

    # ---------- user actions ----------

    async def select_host(self, host_id: str) -> bool:
        """
        Start negotiating with a host by sending it an offer.

        Returns:
            True if the offer was sent
        """
        async with self._lock:
            session = self._session
            if session is None or session.closed or self.state is not ConnectionState.SELECTING_HOST:
                logger.warning("select_host(%s) ignored in state %s", host_id, self.state.value)
                return False

            if session.peer is not None:
                await self._close_peer(session)

            session.remote_id = host_id
            peer = self._new_peer(session)
            peer.on_frame = lambda data: session.post(EventKind.FRAME, (peer, data))
            session.peer = peer

            try:
                offer = await peer.create_offer()
            except PeerError as e:
                await self._abandon_offer(session)
                self._report_error(f"Failed to create offer: {e}")
                return False

            offer_message = Message(type=MessageType.OFFER, target=host_id, payload=offer)
            if not await self._send(session, offer_message):
                await self._abandon_offer(session)
                return False

            session.offer_pending = True
            logger.info("Offer sent to %s", host_id)
            return True

    async def refresh_hosts(self) -> bool:
        """Ask the server for the current host roster."""
        async with self._lock:
            session = self._session
            if session is None or session.closed or session.websocket is None:
                return False
            return await self._send(session, protocol.list_hosts())

    def send_input(self, event: InputEvent) -> bool:
        """Send an input event to the host over the input data channel."""
        session = self._session
        if session is None or session.peer is None:
            return False
        return session.peer.send_input(event.to_json())

    # ---------- event handling ----------

    async def _handle_peer_event(self, session: Session, kind: EventKind, value: Any) -> None:
        if kind is EventKind.PEER_STATE:
            await self._handle_peer_state(session, value)
        elif kind is EventKind.FRAME:
            if self.on_frame:
                self.on_frame(value)

    async def _handle_message(self, session: Session, message: Message) -> None:
        kind = message.type

        if kind is MessageType.REGISTERED:
            if self.state is ConnectionState.CONNECTING:
                logger.info("Registered as %s, requesting host list", message.id or self.client_id)
                self._set_state(ConnectionState.REGISTERED)
                await self._send(session, protocol.list_hosts())
                self._set_state(ConnectionState.SELECTING_HOST)

        elif kind in (MessageType.HOSTS, MessageType.HOSTS_UPDATED):
            await self._update_hosts(session, message.host_list or [])

        elif kind is MessageType.ANSWER:
            await self._handle_answer(session, message)

        elif kind is MessageType.ICE_CANDIDATE:
            await self._handle_remote_candidate(session, message)

        elif kind is MessageType.HOST_DISCONNECTED:
            if message.host_id:
                await self._handle_host_disconnected(session, message.host_id)

        elif kind is MessageType.ERROR:
            self._report_error(message.text or "Unknown error")

        elif kind is MessageType.PONG:
            pass

        elif kind is MessageType.OFFER:
            logger.warning("Ignoring offer from %s, controllers only send offers", message.from_)

        else:
            logger.warning("Unknown message type: %s", message.type_name)

    async def _update_hosts(self, session: Session, hosts: List[HostInfo]) -> None:
        self.hosts = list(hosts)
        logger.info("Received %d host(s)", len(hosts))
        if self.on_hosts:
            self.on_hosts(list(self.hosts))

        target = session.remote_id
        if target and session.peer is not None and all(h.id != target for h in hosts):
            logger.info("Host %s left the roster", target)
            await self._teardown(session, "Host disconnected")

    async def _handle_answer(self, session: Session, message: Message) -> None:
        if session.peer is None or not session.offer_pending:
            logger.warning("Ignoring answer from %s, no offer outstanding", message.from_)
            return
        if message.from_ != session.remote_id:
            logger.warning("Ignoring answer from %s, offer was sent to %s",
                           message.from_, session.remote_id)
            return

        try:
            await session.peer.set_remote_description(message.payload)
        except PeerError as e:
            self._report_error(f"Failed to apply answer: {e}")
            return

        session.offer_pending = False
        logger.info("Answer handled from %s", message.from_)

    async def _handle_host_disconnected(self, session: Session, host_id: str) -> None:
        if host_id == session.remote_id:
            logger.info("Host disconnected: %s", host_id)
            await self._teardown(session, "Host disconnected")
            return

        remaining = [h for h in self.hosts if h.id != host_id]
        if len(remaining) != len(self.hosts):
            self.hosts = remaining
            if self.on_hosts:
                self.on_hosts(list(self.hosts))

    async def _handle_peer_state(self, session: Session, state: str) -> None:
        if state == "connected":
            if self.state is ConnectionState.SELECTING_HOST:
                logger.info("Peer connected to %s", session.remote_id)
                self._set_state(ConnectionState.CONNECTED)
        elif state in ("failed", "disconnected"):
            await self._teardown(session, f"Peer connection {state}")

    # ---------- helpers ----------

    async def _abandon_offer(self, session: Session) -> None:
        await self._close_peer(session)
        session.remote_id = None

    def _reset(self) -> None:
        self.hosts = []
