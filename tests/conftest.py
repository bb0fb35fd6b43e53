import pytest
import pytest_asyncio

from couch_signal.orchestrator import SessionOrchestrator
from couch_signal.registry import PresenceRegistry
from couch_signal.router import SignalingRouter
from tests.fakes import CONTROLLER_ID, FakeClientSocket, FakePeer


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def router(registry):
    return SignalingRouter(registry)


@pytest.fixture
def sockets():
    """Sockets handed out by the fake connector, newest last."""
    return []


@pytest.fixture
def peers():
    """Peers built by the fake peer factory, newest last."""
    return []


@pytest_asyncio.fixture
async def orchestrator(sockets, peers):
    async def connector(url):
        socket = FakeClientSocket()
        sockets.append(socket)
        return socket

    def peer_factory(ice_servers):
        peer = FakePeer(ice_servers)
        peers.append(peer)
        return peer

    orch = SessionOrchestrator(
        client_id=CONTROLLER_ID,
        ice_servers=["stun:stun.example.org:3478"],
        ping_interval=3600,
        peer_factory=peer_factory,
        connector=connector,
    )
    yield orch
    await orch.disconnect()
