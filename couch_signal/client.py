"""
Signaling client plumbing shared by the controller and host sessions.

Concurrency model: the signaling receive loop, the heartbeat timer and the
peer connection callbacks never touch session state directly. They post
events to the session's queue, and a single dispatcher task handles them
one at a time while holding the client lock. User actions take the same
lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import protocol
from .peer import PeerError
from .protocol import Message, MessageType, ProtocolError, Role

logger = logging.getLogger(__name__)

DEFAULT_PING_INTERVAL = 25.0


class ConnectionState(str, Enum):
    """
    Session states.

    Controllers go disconnected -> connecting -> registered ->
    selecting-host -> connected. Hosts skip selecting-host and return to
    registered when a controller goes away. Any state -> disconnected on
    error or disconnect().
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    REGISTERED = "registered"
    SELECTING_HOST = "selecting-host"
    CONNECTED = "connected"


class EventKind(str, Enum):
    MESSAGE = "message"
    TRANSPORT_CLOSED = "transport-closed"
    HEARTBEAT = "heartbeat"
    PEER_STATE = "peer-state"
    LOCAL_CANDIDATE = "local-candidate"
    DATA_CHANNEL = "data-channel"
    FRAME = "frame"
    INPUT = "input"


@dataclass
class Event:
    kind: EventKind
    data: Any = None


@dataclass
class Session:
    """State of one connection attempt. A new attempt always gets a new Session."""

    websocket: Any = None
    remote_id: Optional[str] = None
    peer: Any = None
    offer_pending: bool = False
    closed: bool = False
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    tasks: List[asyncio.Task] = field(default_factory=list)

    def post(self, kind: EventKind, data: Any = None) -> None:
        """Queue an event for the dispatcher; dropped once the session is closed."""
        if not self.closed:
            self.events.put_nowait(Event(kind, data))


class SignalingClient:
    """
    One endpoint's connection to the signaling server.

    Subclasses set ``role`` and implement ``_handle_message`` and
    ``_handle_peer_event``.
    """

    role = Role.CONTROLLER

    def __init__(
        self,
        client_id: str,
        ice_servers: Optional[List[str]] = None,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        peer_factory: Optional[Callable[[List[str]], Any]] = None,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        on_state_change: Optional[Callable[[ConnectionState], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.client_id = client_id
        self.ice_servers = list(ice_servers or [])
        self.ping_interval = ping_interval

        self._peer_factory = peer_factory
        self._connector = connector or ws_connect

        self.on_state_change = on_state_change
        self.on_error = on_error

        self.state = ConnectionState.DISCONNECTED
        self.error_message: Optional[str] = None

        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    async def connect(self, url: str) -> bool:
        """
        Open the signaling connection and register.

        Returns:
            False if a session is already active or the connection failed
        """
        if self.state is not ConnectionState.DISCONNECTED:
            logger.debug("connect() ignored, already %s", self.state.value)
            return False

        session = Session()
        self._session = session
        self.error_message = None
        self._set_state(ConnectionState.CONNECTING)

        try:
            websocket = await self._connector(url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            async with self._lock:
                await self._teardown(session, f"Connection failed: {e}")
            return False

        if session.closed:
            # disconnect() won the race with the handshake
            await websocket.close()
            return False

        session.websocket = websocket
        logger.info("Connecting to %s as %s", url, self.client_id)

        if not await self._send(session, protocol.register(self.client_id, self.role)):
            async with self._lock:
                await self._teardown(session, "Connection lost")
            return False

        session.tasks = [
            asyncio.create_task(self._receive_loop(session)),
            asyncio.create_task(self._heartbeat_loop(session)),
            asyncio.create_task(self._dispatch_loop(session)),
        ]
        return True

    async def disconnect(self) -> None:
        """Tear the session down. No error is reported."""
        async with self._lock:
            session = self._session
            if session is None or session.closed:
                return
            await self._teardown(session, None)

    # ---------- loops ----------

    async def _receive_loop(self, session: Session) -> None:
        websocket = session.websocket
        try:
            while not session.closed:
                raw = await websocket.recv()
                try:
                    message = protocol.decode(raw)
                except ProtocolError as e:
                    logger.warning("Ignoring malformed frame: %s", e)
                    continue
                session.post(EventKind.MESSAGE, message)
        except ConnectionClosed as e:
            if not session.closed:
                logger.info("Signaling connection closed: %s", e)
        except OSError as e:
            if not session.closed:
                logger.error("Receive error: %s", e)
        finally:
            session.post(EventKind.TRANSPORT_CLOSED)

    async def _heartbeat_loop(self, session: Session) -> None:
        while not session.closed:
            await asyncio.sleep(self.ping_interval)
            session.post(EventKind.HEARTBEAT)

    async def _dispatch_loop(self, session: Session) -> None:
        while True:
            event = await session.events.get()
            try:
                if event is None:
                    return
                async with self._lock:
                    if session.closed:
                        return
                    await self._handle_event(session, event)
            except Exception:
                logger.exception("Error handling %s event", event.kind.value)
            finally:
                session.events.task_done()

    # ---------- event handling ----------

    async def _handle_event(self, session: Session, event: Event) -> None:
        kind = event.kind

        if kind is EventKind.MESSAGE:
            await self._handle_message(session, event.data)
        elif kind is EventKind.TRANSPORT_CLOSED:
            await self._teardown(session, "Connection lost")
        elif kind is EventKind.HEARTBEAT:
            await self._send(session, protocol.ping())
        else:
            peer, value = event.data
            if peer is not session.peer:
                logger.debug("Dropping %s event from a replaced peer", kind.value)
                return

            if kind is EventKind.LOCAL_CANDIDATE:
                if session.remote_id:
                    await self._send(session, Message(
                        type=MessageType.ICE_CANDIDATE,
                        target=session.remote_id,
                        payload=value,
                    ))
            elif kind is EventKind.DATA_CHANNEL:
                logger.info("Data channel opened: %s", value)
            else:
                await self._handle_peer_event(session, kind, value)

    async def _handle_message(self, session: Session, message: Message) -> None:
        raise NotImplementedError

    async def _handle_peer_event(self, session: Session, kind: EventKind, value: Any) -> None:
        raise NotImplementedError

    async def _handle_remote_candidate(self, session: Session, message: Message) -> None:
        if session.peer is None:
            logger.warning("Ignoring ICE candidate from %s, no peer connection", message.from_)
            return
        if message.from_ != session.remote_id:
            logger.warning("Ignoring ICE candidate from %s, not the current peer", message.from_)
            return

        try:
            await session.peer.add_ice_candidate(message.payload)
        except PeerError as e:
            self._report_error(f"Failed to apply ICE candidate: {e}")

    # ---------- helpers ----------

    def _new_peer(self, session: Session):
        """Build a peer connection whose callbacks post to ``session``."""
        peer = self._peer_factory(self.ice_servers)
        peer.on_ice_candidate = lambda payload: session.post(EventKind.LOCAL_CANDIDATE, (peer, payload))
        peer.on_state_change = lambda state: session.post(EventKind.PEER_STATE, (peer, state))
        peer.on_data_channel = lambda label: session.post(EventKind.DATA_CHANNEL, (peer, label))
        return peer

    async def _send(self, session: Session, message: Message) -> bool:
        websocket = session.websocket
        if websocket is None or session.closed:
            logger.warning("Cannot send %s, not connected", message.type_name)
            return False
        try:
            await websocket.send(protocol.encode(message))
            return True
        except ConnectionClosed as e:
            logger.warning("Send %s failed: %s", message.type_name, e)
            return False

    async def _close_peer(self, session: Session) -> None:
        peer = session.peer
        session.peer = None
        session.offer_pending = False
        if peer is not None:
            await peer.close()

    def _reset(self) -> None:
        """Clear per-session state kept on the client itself."""

    async def _teardown(self, session: Session, error: Optional[str]) -> None:
        if session.closed:
            return
        session.closed = True

        current = asyncio.current_task()
        for task in session.tasks:
            if task is not current and not task.done():
                task.cancel()
        session.events.put_nowait(None)

        await self._close_peer(session)

        websocket = session.websocket
        session.websocket = None
        if websocket is not None:
            try:
                await websocket.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Error closing signaling socket: %s", e)

        session.remote_id = None
        if self._session is session:
            self._session = None
        self._reset()

        if error:
            self._report_error(error)
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _report_error(self, message: str) -> None:
        logger.warning("Session error: %s", message)
        self.error_message = message
        if self.on_error:
            self.on_error(message)
