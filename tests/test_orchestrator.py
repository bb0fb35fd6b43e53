import asyncio
import json

import pytest

from couch_signal.input_events import mouse_move
from couch_signal.orchestrator import ConnectionState, SessionOrchestrator
from couch_signal.protocol import HostInfo
from tests.fakes import (
    ANSWER_PAYLOAD,
    CANDIDATE_PAYLOAD,
    CONTROLLER_ID,
    OFFER_PAYLOAD,
    FakeClientSocket,
    FakePeer,
    wait_until,
)

URL = "ws://signal.test:8080"
ROSTER = [{"id": "host-mbp", "online": True}, {"id": "host-imac", "online": True}]


async def settle(orchestrator, socket=None):
    """Wait until everything fed so far has been dispatched."""
    if socket is not None:
        await wait_until(socket.inbound.empty)
    session = orchestrator.session
    if session is not None:
        await asyncio.wait_for(session.events.join(), 2)


async def registered(orchestrator, sockets):
    assert await orchestrator.connect(URL)
    socket = sockets[-1]
    socket.feed({"type": "registered", "id": CONTROLLER_ID, "timestamp": 1})
    await wait_until(lambda: orchestrator.state is ConnectionState.SELECTING_HOST)
    return socket


async def offered(orchestrator, sockets, peers, host_id="host-mbp"):
    socket = await registered(orchestrator, sockets)
    socket.feed({"type": "hosts", "list": ROSTER})
    await settle(orchestrator, socket)
    assert await orchestrator.select_host(host_id)
    return socket, peers[-1]


def make_orchestrator(**kwargs):
    """Stand-alone orchestrator for tests that need custom wiring."""
    sockets = []

    async def connector(url):
        socket = FakeClientSocket()
        sockets.append(socket)
        return socket

    kwargs.setdefault("peer_factory", FakePeer)
    kwargs.setdefault("ping_interval", 3600)
    return SessionOrchestrator(client_id=CONTROLLER_ID, connector=connector, **kwargs), sockets


@pytest.mark.asyncio
async def test_connect_registers_as_controller(orchestrator, sockets):
    states = []
    orchestrator.on_state_change = states.append

    assert await orchestrator.connect(URL)

    assert orchestrator.state is ConnectionState.CONNECTING
    assert sockets[-1].sent == [{"type": "register", "id": CONTROLLER_ID, "role": "controller"}]
    assert states == [ConnectionState.CONNECTING]


@pytest.mark.asyncio
async def test_connect_is_noop_when_not_disconnected(orchestrator, sockets):
    assert await orchestrator.connect(URL)
    assert not await orchestrator.connect(URL)
    assert len(sockets) == 1


@pytest.mark.asyncio
async def test_connect_failure_reports_error():
    errors = []

    async def connector(url):
        raise OSError("connection refused")

    orchestrator = SessionOrchestrator(connector=connector, on_error=errors.append)

    assert not await orchestrator.connect(URL)
    assert orchestrator.state is ConnectionState.DISCONNECTED
    assert errors == ["Connection failed: connection refused"]
    assert orchestrator.session is None


@pytest.mark.asyncio
async def test_generated_client_id():
    orchestrator = SessionOrchestrator()
    assert orchestrator.client_id.startswith("controller-")


@pytest.mark.asyncio
async def test_registered_requests_host_list(orchestrator, sockets):
    states = []
    orchestrator.on_state_change = states.append

    socket = await registered(orchestrator, sockets)

    assert socket.sent[-1] == {"type": "list-hosts"}
    assert states == [
        ConnectionState.CONNECTING,
        ConnectionState.REGISTERED,
        ConnectionState.SELECTING_HOST,
    ]


@pytest.mark.asyncio
async def test_hosts_update_roster(orchestrator, sockets):
    rosters = []
    orchestrator.on_hosts = rosters.append
    socket = await registered(orchestrator, sockets)

    socket.feed({"type": "hosts", "list": ROSTER})
    await settle(orchestrator, socket)
    socket.feed({"type": "hosts-updated", "list": ROSTER[:1]})
    await settle(orchestrator, socket)

    assert orchestrator.hosts == [HostInfo(id="host-mbp", online=True)]
    assert len(rosters) == 2


@pytest.mark.asyncio
async def test_refresh_hosts(orchestrator, sockets):
    assert not await orchestrator.refresh_hosts()
    socket = await registered(orchestrator, sockets)

    assert await orchestrator.refresh_hosts()
    assert socket.sent[-1] == {"type": "list-hosts"}


@pytest.mark.asyncio
async def test_select_host_sends_offer(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)

    assert socket.sent[-1] == {"type": "offer", "target": "host-mbp", "payload": OFFER_PAYLOAD}
    assert orchestrator.target_host_id == "host-mbp"
    assert orchestrator.session.offer_pending
    assert peer.ice_servers == ["stun:stun.example.org:3478"]


@pytest.mark.asyncio
async def test_select_host_requires_selecting_state(orchestrator, sockets):
    assert not await orchestrator.select_host("host-mbp")

    await orchestrator.connect(URL)
    assert not await orchestrator.select_host("host-mbp")
    assert sockets[-1].of_type("offer") == []


@pytest.mark.asyncio
async def test_offer_failure_reports_error():
    errors = []
    orchestrator, sockets = make_orchestrator(
        peer_factory=lambda servers: FakePeer(servers, fail_offer=True),
        on_error=errors.append,
    )
    await registered(orchestrator, sockets)

    assert not await orchestrator.select_host("host-mbp")

    assert errors == ["Failed to create offer: no codecs"]
    assert orchestrator.state is ConnectionState.SELECTING_HOST
    assert orchestrator.target_host_id is None
    assert orchestrator.session.peer is None
    assert sockets[-1].of_type("offer") == []
    await orchestrator.disconnect()


@pytest.mark.asyncio
async def test_selecting_again_replaces_peer(orchestrator, sockets, peers):
    socket, first = await offered(orchestrator, sockets, peers)

    assert await orchestrator.select_host("host-imac")

    assert first.closed
    assert orchestrator.target_host_id == "host-imac"

    # State changes from the replaced peer are ignored
    first.emit_state("connected")
    await settle(orchestrator)
    assert orchestrator.state is ConnectionState.SELECTING_HOST


@pytest.mark.asyncio
async def test_answer_from_target_is_applied(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)

    socket.feed({"type": "answer", "from": "host-mbp", "payload": ANSWER_PAYLOAD, "timestamp": 2})
    await settle(orchestrator, socket)

    assert peer.remote_description == ANSWER_PAYLOAD
    assert not orchestrator.session.offer_pending


@pytest.mark.asyncio
async def test_answer_from_other_host_is_ignored(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)

    socket.feed({"type": "answer", "from": "host-imac", "payload": ANSWER_PAYLOAD})
    await settle(orchestrator, socket)

    assert peer.remote_description is None
    assert orchestrator.session.offer_pending


@pytest.mark.asyncio
async def test_duplicate_answer_is_ignored(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)
    errors = []
    orchestrator.on_error = errors.append

    socket.feed({"type": "answer", "from": "host-mbp", "payload": ANSWER_PAYLOAD})
    socket.feed({"type": "answer", "from": "host-mbp", "payload": {"type": "bogus"}})
    await settle(orchestrator, socket)

    assert peer.remote_description == ANSWER_PAYLOAD
    assert errors == []


@pytest.mark.asyncio
async def test_bad_answer_reports_error(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)
    errors = []
    orchestrator.on_error = errors.append

    socket.feed({"type": "answer", "from": "host-mbp", "payload": {"type": "bogus"}})
    await settle(orchestrator, socket)

    assert errors == ["Failed to apply answer: bad answer"]
    assert orchestrator.state is ConnectionState.SELECTING_HOST


@pytest.mark.asyncio
async def test_remote_candidates(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)
    errors = []
    orchestrator.on_error = errors.append

    socket.feed({"type": "ice-candidate", "from": "host-mbp", "payload": CANDIDATE_PAYLOAD})
    socket.feed({"type": "ice-candidate", "from": "host-imac", "payload": CANDIDATE_PAYLOAD})
    socket.feed({"type": "ice-candidate", "from": "host-mbp", "payload": {}})
    await settle(orchestrator, socket)

    assert peer.candidates == [CANDIDATE_PAYLOAD]
    assert errors == ["Failed to apply ICE candidate: bad candidate"]


@pytest.mark.asyncio
async def test_candidate_without_peer_is_ignored(orchestrator, sockets):
    socket = await registered(orchestrator, sockets)

    socket.feed({"type": "ice-candidate", "from": "host-mbp", "payload": CANDIDATE_PAYLOAD})
    await settle(orchestrator, socket)

    assert orchestrator.state is ConnectionState.SELECTING_HOST


@pytest.mark.asyncio
async def test_local_candidates_are_sent_to_target(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)

    peer.emit_candidate(CANDIDATE_PAYLOAD)
    await settle(orchestrator)

    assert socket.sent[-1] == {
        "type": "ice-candidate",
        "target": "host-mbp",
        "payload": CANDIDATE_PAYLOAD,
    }


@pytest.mark.asyncio
async def test_peer_connected(orchestrator, sockets, peers):
    socket, peer = await offered(orchestrator, sockets, peers)

    peer.emit_state("connecting")
    peer.emit_state("connected")
    await settle(orchestrator)

    assert orchestrator.state is ConnectionState.CONNECTED
    assert orchestrator.target_host_id == "host-mbp"


@pytest.mark.asyncio
@pytest.mark.parametrize("state", ["failed", "disconnected"])
async def test_peer_failure_tears_down(orchestrator, sockets, peers, state):
    errors = []
    orchestrator.on_error = errors.append
    socket, peer = await offered(orchestrator, sockets, peers)

    peer.emit_state(state)
    await wait_until(lambda: orchestrator.state is ConnectionState.DISCONNECTED)

    assert errors == [f"Peer connection {state}"]
    assert peer.closed
    assert socket.closed
    assert orchestrator.hosts == []
    assert orchestrator.target_host_id is None


@pytest.mark.asyncio
async def test_target_host_disconnected(orchestrator, sockets, peers):
    errors = []
    orchestrator.on_error = errors.append
    socket, peer = await offered(orchestrator, sockets, peers)

    socket.feed({"type": "host-disconnected", "hostId": "host-mbp"})
    await wait_until(lambda: orchestrator.state is ConnectionState.DISCONNECTED)

    assert errors == ["Host disconnected"]
    assert peer.closed


@pytest.mark.asyncio
async def test_other_host_disconnected_updates_roster(orchestrator, sockets, peers):
    rosters = []
    socket, peer = await offered(orchestrator, sockets, peers)
    orchestrator.on_hosts = rosters.append

    socket.feed({"type": "host-disconnected", "hostId": "host-imac"})
    await settle(orchestrator, socket)

    assert orchestrator.state is ConnectionState.SELECTING_HOST
    assert orchestrator.hosts == [HostInfo(id="host-mbp", online=True)]
    assert rosters == [[HostInfo(id="host-mbp", online=True)]]


@pytest.mark.asyncio
async def test_target_missing_from_roster_tears_down(orchestrator, sockets, peers):
    errors = []
    orchestrator.on_error = errors.append
    socket, peer = await offered(orchestrator, sockets, peers)

    socket.feed({"type": "hosts-updated", "list": [{"id": "host-imac", "online": True}]})
    await wait_until(lambda: orchestrator.state is ConnectionState.DISCONNECTED)

    assert errors == ["Host disconnected"]


@pytest.mark.asyncio
async def test_server_error_is_reported(orchestrator, sockets):
    errors = []
    orchestrator.on_error = errors.append
    socket = await registered(orchestrator, sockets)

    socket.feed({"type": "error", "message": "Target host-x not found or not connected"})
    await settle(orchestrator, socket)

    assert errors == ["Target host-x not found or not connected"]
    assert orchestrator.error_message == errors[0]
    assert orchestrator.state is ConnectionState.SELECTING_HOST


@pytest.mark.asyncio
async def test_malformed_and_unexpected_frames_are_ignored(orchestrator, sockets):
    socket = await registered(orchestrator, sockets)

    socket.feed_raw("{garbage")
    socket.feed({"type": "pong"})
    socket.feed({"type": "offer", "from": "host-mbp", "payload": OFFER_PAYLOAD})
    socket.feed({"type": "dance"})
    await settle(orchestrator, socket)

    assert orchestrator.state is ConnectionState.SELECTING_HOST
    assert orchestrator.error_message is None


@pytest.mark.asyncio
async def test_connection_loss(orchestrator, sockets):
    errors = []
    orchestrator.on_error = errors.append
    socket = await registered(orchestrator, sockets)

    socket.drop()
    await wait_until(lambda: orchestrator.state is ConnectionState.DISCONNECTED)

    assert errors == ["Connection lost"]
    assert orchestrator.session is None


@pytest.mark.asyncio
async def test_disconnect_is_silent_and_idempotent(orchestrator, sockets, peers):
    errors = []
    orchestrator.on_error = errors.append
    socket, peer = await offered(orchestrator, sockets, peers)
    session = orchestrator.session

    await orchestrator.disconnect()
    await orchestrator.disconnect()

    assert orchestrator.state is ConnectionState.DISCONNECTED
    assert errors == []
    assert peer.closed
    assert socket.closed
    assert session.closed

    await asyncio.gather(*session.tasks, return_exceptions=True)
    assert all(task.done() for task in session.tasks)


@pytest.mark.asyncio
async def test_reconnect_after_disconnect(orchestrator, sockets):
    await registered(orchestrator, sockets)
    first_session = orchestrator.session
    await orchestrator.disconnect()

    await registered(orchestrator, sockets)

    assert len(sockets) == 2
    assert orchestrator.session is not first_session


@pytest.mark.asyncio
async def test_heartbeat_sends_ping():
    orchestrator, sockets = make_orchestrator(ping_interval=0.01)
    await registered(orchestrator, sockets)

    await wait_until(lambda: sockets[-1].of_type("ping"))
    await orchestrator.disconnect()


@pytest.mark.asyncio
async def test_send_input_and_frames(orchestrator, sockets, peers):
    frames = []
    orchestrator.on_frame = frames.append
    assert not orchestrator.send_input(mouse_move(0.5, 0.25))

    socket, peer = await offered(orchestrator, sockets, peers)
    assert orchestrator.send_input(mouse_move(0.5, 0.25))
    assert json.loads(peer.inputs[0]) == {"type": "mouse_move", "x": 0.5, "y": 0.25}

    peer.emit_frame(b"\xff\xd8jpeg")
    await settle(orchestrator)
    assert frames == [b"\xff\xd8jpeg"]


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [
    '{"type":"pong","timestamp":Infinity}',
    '{"type":"pong","timestamp":NaN}',
    '{"type":"hosts","list":' + "[" * 100000 + "]" * 100000 + "}",
])
async def test_undecodable_frames_keep_session_alive(orchestrator, sockets, raw):
    errors = []
    orchestrator.on_error = errors.append
    socket = await registered(orchestrator, sockets)

    socket.feed_raw(raw)
    socket.feed({"type": "hosts", "list": ROSTER})
    await settle(orchestrator, socket)

    assert orchestrator.state is ConnectionState.SELECTING_HOST
    assert [h.id for h in orchestrator.hosts] == ["host-mbp", "host-imac"]
    assert errors == []
    assert not orchestrator.session.tasks[0].done()


@pytest.mark.asyncio
async def test_offer_send_failure_releases_peer(orchestrator, sockets, peers):
    socket = await registered(orchestrator, sockets)
    await settle(orchestrator, socket)
    socket.closed = True

    assert not await orchestrator.select_host("host-mbp")

    assert peers[-1].closed
    assert orchestrator.target_host_id is None
    assert orchestrator.session.peer is None
    assert not orchestrator.session.offer_pending
