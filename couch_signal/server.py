"""
Signaling server for Couch Signal.
Hosts the signaling router on a WebSocket listener, plus a small HTTP app
for health checks.
"""

import asyncio
import logging
import signal
import time
from typing import Optional, Set

from aiohttp import web
from websockets.asyncio.server import Server, ServerConnection, serve as ws_serve
from websockets.exceptions import ConnectionClosed

from .config import Config, get_config, get_local_ip
from .liveness import LivenessMonitor
from .registry import PresenceRegistry
from .router import SignalingRouter
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)


class SignalingServer:
    """
    WebSocket signaling server.

    Features:
    - Presence registry of hosts and controllers
    - Offer/answer/ICE relay by endpoint id
    - Host roster broadcasts to controllers
    - Ping sweep eviction of dead connections
    - HTTP health endpoint
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize the server."""
        self.config = config or get_config()

        self.registry = PresenceRegistry()
        self.router = SignalingRouter(self.registry)

        # Every open connection, registered or not
        self.connections: Set[WebSocketTransport] = set()
        self.started_at = time.time()

        self.monitor = LivenessMonitor(
            connections=lambda: self.connections,
            on_evict=self.router.handle_disconnect,
            interval=self.config.liveness_interval,
        )

        # Server instances
        self.http_runner: Optional[web.AppRunner] = None
        self.ws_server: Optional[Server] = None

        # Shutdown event
        self.shutdown_event = asyncio.Event()

        # Setup HTTP app for health checks
        self.http_app = web.Application()
        self._setup_http_routes()

    def _setup_http_routes(self) -> None:
        """Setup HTTP routes."""
        self.http_app.router.add_get("/health", self._handle_health)
        self.http_app.router.add_get("/ping", self._handle_ping)

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    async def _handle_ping(self, request: web.Request) -> web.Response:
        """Simple ping endpoint."""
        return web.Response(text="pong")

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Return server health."""
        status = {
            "status": "healthy",
            "clients": len(self.registry),
            "connections": len(self.connections),
            "uptime": round(self.uptime, 3),
        }
        return web.json_response(status)

    async def _websocket_handler(self, websocket: ServerConnection) -> None:
        """Handle a WebSocket connection."""
        transport = WebSocketTransport(websocket)
        self.connections.add(transport)

        logger.info("New connection from %s", transport.remote_address)

        try:
            async for frame in websocket:
                transport.touch()
                try:
                    await self.router.handle_frame(frame, transport)
                except ConnectionClosed:
                    raise
                except Exception:
                    logger.exception("Error handling frame from %r", transport)
        except ConnectionClosed:
            pass
        finally:
            self.connections.discard(transport)
            await self.router.handle_disconnect(transport)
            logger.debug("Connection from %s closed", transport.remote_address)

    async def start(self) -> None:
        """Start both the WebSocket and HTTP servers."""
        # Liveness is handled by LivenessMonitor, not the library keepalive
        self.ws_server = await ws_serve(
            self._websocket_handler,
            self.config.host,
            self.config.port,
            max_size=self.config.max_message_bytes,
            ping_interval=None,
        )

        self.http_runner = web.AppRunner(self.http_app)
        await self.http_runner.setup()
        http_site = web.TCPSite(self.http_runner, self.config.host, self.config.health_port)
        await http_site.start()

        self.monitor.start()
        self.started_at = time.time()

        display_host = self.config.host
        if display_host == "0.0.0.0":
            display_host = get_local_ip()

        logger.info("Signaling server running on port %d", self.config.port)
        print(f"\n📡 Couch Signal started!")
        print(f"   Signaling: ws://{display_host}:{self.config.port}")
        print(f"   Health:    http://{display_host}:{self.config.health_port}/health\n")

    async def stop(self) -> None:
        """Stop the servers."""
        await self.monitor.stop()

        # Close all WebSocket connections
        for transport in list(self.connections):
            try:
                await transport.websocket.close()
            except ConnectionClosed:
                pass

        if self.ws_server:
            self.ws_server.close()
            await self.ws_server.wait_closed()
            self.ws_server = None

        if self.http_runner:
            await self.http_runner.cleanup()
            self.http_runner = None

        print("\n📡 Couch Signal stopped.\n")

    async def run_forever(self) -> None:
        """Run the server until shutdown_event is set."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.shutdown_event.set)
            except (NotImplementedError, RuntimeError):
                pass

        try:
            await self.shutdown_event.wait()
            logger.info("Shutdown requested, closing server...")
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


def run_server(config: Optional[Config] = None) -> None:
    """Run the server (blocking)."""
    server = SignalingServer(config)

    try:
        asyncio.run(server.run_forever())
    except KeyboardInterrupt:
        print("\nShutting down...")
