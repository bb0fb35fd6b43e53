"""
Peer connections for both ends of a session, built on aiortc.

Two data channels carry the session: ``frames`` brings JPEG frames
downstream from the host and ``input`` carries input events upstream.
aiortc will not build an offer without media or a data channel, so the
controller opens ``input`` itself and accepts whatever the host opens.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Union

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InternalError, InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)

FRAMES_CHANNEL = "frames"
INPUT_CHANNEL = "input"

SDP_TYPES = ("offer", "answer", "pranswer", "rollback")

_RTC_ERRORS = (InternalError, InvalidAccessError, InvalidStateError, ValueError)


class PeerError(Exception):
    """Raised for negotiation payloads the peer connection cannot use."""


def description_to_payload(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def payload_to_description(payload: Any) -> RTCSessionDescription:
    """
    Convert an ``{type, sdp}`` payload into an RTCSessionDescription.

    Raises:
        PeerError: if the payload is not a session description.
    """
    if not isinstance(payload, dict):
        raise PeerError("Session description payload must be an object")
    sdp_type = payload.get("type")
    sdp = payload.get("sdp")
    if sdp_type not in SDP_TYPES or not isinstance(sdp, str):
        raise PeerError(f"Invalid session description (type={sdp_type!r})")
    return RTCSessionDescription(sdp=sdp, type=sdp_type)


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Wire form ``{candidate, sdpMLineIndex, sdpMid}``; sdpMid is left out when unknown."""
    payload: Dict[str, Any] = {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMLineIndex": candidate.sdpMLineIndex or 0,
    }
    if candidate.sdpMid is not None:
        payload["sdpMid"] = candidate.sdpMid
    return payload


def payload_to_candidate(payload: Any) -> RTCIceCandidate:
    """
    Parse an ICE candidate payload.

    Raises:
        PeerError: if the payload has no usable candidate line.
    """
    if not isinstance(payload, dict):
        raise PeerError("ICE candidate payload must be an object")

    line = payload.get("candidate")
    if not isinstance(line, str) or not line:
        raise PeerError("ICE candidate payload has no candidate")
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise PeerError(f"Invalid ICE candidate: {line!r}") from e

    mline_index = payload.get("sdpMLineIndex")
    if isinstance(mline_index, str) and mline_index.isdigit():
        mline_index = int(mline_index)
    candidate.sdpMLineIndex = mline_index
    candidate.sdpMid = payload.get("sdpMid")
    return candidate


class BasePeerConnection:
    """
    Thin wrapper over RTCPeerConnection shared by both ends of a session.

    Callbacks are plain attributes so the owner can route every event into
    its own event queue:

    - on_ice_candidate(payload): local candidate in wire form
    - on_state_change(state): "connecting", "connected", "failed", ...
    - on_data_channel(label): a data channel opened
    """

    def __init__(self, ice_servers: Optional[List[str]] = None):
        servers = [RTCIceServer(urls=url) for url in (ice_servers or [])]
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=servers))
        self._channels: Dict[str, RTCDataChannel] = {}
        self._closed = False

        self.on_ice_candidate: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_state_change: Optional[Callable[[str], None]] = None
        self.on_data_channel: Optional[Callable[[str], None]] = None

        pc = self._pc

        @pc.on("connectionstatechange")
        def _on_connection_state():
            logger.info("Peer connection state: %s", pc.connectionState)
            if self.on_state_change:
                self.on_state_change(pc.connectionState)

        @pc.on("icecandidate")
        def _on_ice_candidate(candidate: Optional[RTCIceCandidate]):
            if candidate is not None and self.on_ice_candidate:
                self.on_ice_candidate(candidate_to_payload(candidate))

        @pc.on("datachannel")
        def _on_datachannel(channel: RTCDataChannel):
            self._accept_channel(channel)

        self._open_channels()

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def _open_channels(self) -> None:
        """Create the locally owned data channels."""

    def _watch_channel(self, channel: RTCDataChannel) -> None:
        """Attach message handlers to an accepted channel."""

    def _accept_channel(self, channel: RTCDataChannel) -> None:
        label = channel.label
        if label not in (FRAMES_CHANNEL, INPUT_CHANNEL):
            logger.warning("Ignoring unknown data channel: %s", label)
            return

        logger.info("Data channel received: %s", label)
        # Locally created channels are the ones used for sending
        self._channels.setdefault(label, channel)
        self._watch_channel(channel)

        if channel.readyState == "open":
            self._channel_opened(label)
        else:
            channel.on("open", lambda: self._channel_opened(label))

    def _channel_opened(self, label: str) -> None:
        if self.on_data_channel:
            self.on_data_channel(label)

    def _send_on(self, label: str, data: Union[str, bytes]) -> bool:
        channel = self._channels.get(label)
        if channel is None or channel.readyState != "open":
            return False
        channel.send(data)
        return True

    def _check_open(self) -> None:
        if self._closed:
            raise PeerError("Peer connection is closed")

    async def set_remote_description(self, payload: Any) -> None:
        self._check_open()
        description = payload_to_description(payload)
        try:
            await self._pc.setRemoteDescription(description)
        except _RTC_ERRORS as e:
            raise PeerError(str(e)) from e

    async def add_ice_candidate(self, payload: Any) -> None:
        self._check_open()
        candidate = payload_to_candidate(payload)
        try:
            await self._pc.addIceCandidate(candidate)
        except _RTC_ERRORS as e:
            raise PeerError(str(e)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Closing the peer connection also closes its data channels
        self._channels.clear()
        await self._pc.close()


class PeerConnection(BasePeerConnection):
    """
    Controller end: sends the offer, receives frames, sends input.

    ``on_frame(data)`` is called with the bytes of each frame.
    """

    def __init__(self, ice_servers: Optional[List[str]] = None):
        self.on_frame: Optional[Callable[[bytes], None]] = None
        super().__init__(ice_servers)

    def _open_channels(self) -> None:
        self._accept_channel(self._pc.createDataChannel(INPUT_CHANNEL))

    def _watch_channel(self, channel: RTCDataChannel) -> None:
        if channel.label != FRAMES_CHANNEL:
            return

        @channel.on("message")
        def _on_message(message):
            if isinstance(message, str):
                message = message.encode("utf-8")
            if self.on_frame:
                self.on_frame(message)

    async def create_offer(self) -> Dict[str, str]:
        """Create an offer, apply it locally and return it in wire form."""
        self._check_open()
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except _RTC_ERRORS as e:
            raise PeerError(f"Offer failed: {e}") from e
        return description_to_payload(self._pc.localDescription)

    def send_input(self, data: str) -> bool:
        """Send an encoded input event; False if the input channel is not open."""
        return self._send_on(INPUT_CHANNEL, data)


class HostPeerConnection(BasePeerConnection):
    """
    Host end: answers the controller's offer, sends frames, receives input.

    The host opens ``frames`` unordered with no retransmits, so a late frame
    is dropped rather than delaying newer ones, and ``input`` ordered.
    ``on_input(text)`` is called with each input message, whichever side
    opened the channel it arrived on.
    """

    def __init__(self, ice_servers: Optional[List[str]] = None):
        self.on_input: Optional[Callable[[str], None]] = None
        super().__init__(ice_servers)

    def _open_channels(self) -> None:
        self._accept_channel(self._pc.createDataChannel(FRAMES_CHANNEL, ordered=False, maxRetransmits=0))
        self._accept_channel(self._pc.createDataChannel(INPUT_CHANNEL, ordered=True))

    def _watch_channel(self, channel: RTCDataChannel) -> None:
        if channel.label != INPUT_CHANNEL:
            return

        @channel.on("message")
        def _on_message(message):
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            if self.on_input:
                self.on_input(message)

    async def create_answer(self, offer: Any) -> Dict[str, str]:
        """Apply the controller's offer and return the local answer in wire form."""
        await self.set_remote_description(offer)
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except _RTC_ERRORS as e:
            raise PeerError(f"Answer failed: {e}") from e
        return description_to_payload(self._pc.localDescription)

    def send_frame(self, data: bytes) -> bool:
        """Send one encoded frame; False if the frames channel is not open."""
        return self._send_on(FRAMES_CHANNEL, data)
