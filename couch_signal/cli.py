#!/usr/bin/env python3
"""
Couch Signal CLI - run the signaling server, a headless controller or a host.
"""

import argparse
import asyncio
import logging
import os
import secrets
import signal
import sys
from pathlib import Path

# PID file location
PID_FILE = Path("/tmp/couch-signal.pid")


def setup_logging(level: str) -> None:
    """Configure root logging once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_pid() -> int | None:
    """Get PID from file if exists."""
    if PID_FILE.exists():
        try:
            pid = int(PID_FILE.read_text().strip())
            # Check if process is running
            os.kill(pid, 0)
            return pid
        except (ValueError, OSError):
            PID_FILE.unlink(missing_ok=True)
    return None


def write_pid() -> None:
    """Write current PID to file."""
    PID_FILE.write_text(str(os.getpid()))


def remove_pid() -> None:
    """Remove PID file."""
    PID_FILE.unlink(missing_ok=True)


def cmd_serve(args) -> int:
    """Start the signaling server."""
    existing_pid = get_pid()
    if existing_pid:
        print(f"❌ Couch Signal is already running (PID: {existing_pid})")
        print(f"   Run 'couch-signal stop' first")
        return 1

    # Import here to avoid loading when not needed
    from .config import reload_config
    from .server import run_server

    config = reload_config(args.config)

    # Override with CLI args if provided
    if args.host:
        config.set("server", "host", args.host)
    if args.port:
        config.set("server", "port", args.port)
    if args.health_port:
        config.set("server", "health_port", args.health_port)
    if args.interval:
        config.set("liveness", "interval_seconds", args.interval)

    setup_logging(args.log_level or config.log_level)

    write_pid()

    try:
        run_server(config)
    except KeyboardInterrupt:
        pass
    finally:
        remove_pid()

    return 0


def cmd_stop(args) -> int:
    """Stop the server."""
    pid = get_pid()

    if not pid:
        print("ℹ️  Couch Signal is not running")
        return 0

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"✅ Stopped Couch Signal (PID: {pid})")
        remove_pid()
        return 0
    except OSError as e:
        print(f"❌ Failed to stop: {e}")
        remove_pid()
        return 1


def cmd_status(args) -> int:
    """Check server status."""
    pid = get_pid()

    if pid:
        print(f"✅ Couch Signal is running (PID: {pid})")

        from .config import get_config
        config = get_config()
        print(f"   Signaling: ws://{config.host}:{config.port}")
        print(f"   Health:    http://{config.host}:{config.health_port}/health")
        return 0
    else:
        print("❌ Couch Signal is not running")
        return 1


def cmd_ip(args) -> int:
    """Show local IP address."""
    from .config import get_config, get_local_ip

    ip = get_local_ip()
    print(f"📍 Local IP: {ip}")
    print(f"   Signaling URL: ws://{ip}:{get_config().port}")
    return 0


def cmd_config(args) -> int:
    """Show current configuration."""
    from .config import get_config_paths, reload_config

    print("📝 Configuration:")
    print()

    # Show config file locations
    print("   Config file search paths:")
    for path in get_config_paths():
        exists = "✓" if path.exists() else " "
        print(f"   [{exists}] {path}")
    print()

    config = reload_config(args.config)
    print("   Current settings:")
    print(f"   - Host: {config.host}")
    print(f"   - Port: {config.port}")
    print(f"   - Health port: {config.health_port}")
    print(f"   - Liveness interval: {config.liveness_interval:g}s")
    print(f"   - Signaling URL: {config.signaling_url}")
    print(f"   - Controller ID: {config.controller_id or '(generated)'}")
    print(f"   - Host ID: {config.host_id or '(generated)'}")
    print(f"   - Ping interval: {config.ping_interval:g}s")
    print(f"   - ICE servers: {', '.join(config.ice_servers) or '(none)'}")
    print(f"   - Log level: {config.log_level}")

    return 0


async def run_controller(url: str, client_id: str, host_id: str | None, config) -> int:
    """Run a controller session until it ends or is interrupted."""
    from .orchestrator import ConnectionState, SessionOrchestrator

    finished = asyncio.Event()
    pending = set()
    orchestrator: SessionOrchestrator

    def on_state_change(state: ConnectionState) -> None:
        print(f"🔄 State: {state.value}")
        if state is ConnectionState.DISCONNECTED:
            finished.set()

    def on_hosts(hosts) -> None:
        if not hosts:
            print("🖥️  No hosts online")
        for h in hosts:
            print(f"🖥️  {h.id} ({'online' if h.online else 'offline'})")

        # Select the requested host as soon as it shows up in the roster
        if (
            host_id
            and orchestrator.state is ConnectionState.SELECTING_HOST
            and orchestrator.target_host_id is None
            and any(h.id == host_id and h.online for h in hosts)
        ):
            task = asyncio.create_task(orchestrator.select_host(host_id))
            pending.add(task)
            task.add_done_callback(pending.discard)

    def on_error(message: str) -> None:
        print(f"❌ {message}")

    orchestrator = SessionOrchestrator(
        client_id=client_id or None,
        ice_servers=config.ice_servers,
        ping_interval=config.ping_interval,
        on_state_change=on_state_change,
        on_hosts=on_hosts,
        on_error=on_error,
    )

    print(f"🎮 Controller {orchestrator.client_id} connecting to {url}")
    if not await orchestrator.connect(url):
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, finished.set)
        except (NotImplementedError, RuntimeError):
            pass

    await finished.wait()
    await orchestrator.disconnect()
    return 1 if orchestrator.error_message else 0


def cmd_connect(args) -> int:
    """Connect to a signaling server as a controller."""
    from .config import reload_config

    config = reload_config(args.config)
    setup_logging(args.log_level or config.log_level)

    url = args.url or config.signaling_url
    client_id = args.id or config.controller_id

    try:
        return asyncio.run(run_controller(url, client_id, args.host, config))
    except KeyboardInterrupt:
        return 0


async def run_host(url: str, host_id: str, config) -> int:
    """Run a host session until signaling drops or the process is interrupted."""
    from .host import HostSession
    from .orchestrator import ConnectionState

    finished = asyncio.Event()

    def on_state_change(state: ConnectionState) -> None:
        print(f"🔄 State: {state.value}")
        if state is ConnectionState.DISCONNECTED:
            finished.set()

    def on_input(event) -> None:
        print(f"🖱️  {event.to_json()}")

    def on_error(message: str) -> None:
        print(f"❌ {message}")

    session = HostSession(
        host_id,
        ice_servers=config.ice_servers,
        ping_interval=config.ping_interval,
        on_state_change=on_state_change,
        on_error=on_error,
        on_input=on_input,
    )

    print(f"🖥️  Host {host_id} connecting to {url}")
    if not await session.connect(url):
        return 1
    print(f"   Share this ID with controllers: {host_id}")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, finished.set)
        except (NotImplementedError, RuntimeError):
            pass

    await finished.wait()
    await session.disconnect()
    return 1 if session.error_message else 0


def cmd_host(args) -> int:
    """Register with a signaling server as a host and answer controllers."""
    from .config import reload_config
    from .protocol import HOST_ID_PREFIX

    config = reload_config(args.config)
    setup_logging(args.log_level or config.log_level)

    url = args.url or config.signaling_url
    host_id = args.id or config.host_id or HOST_ID_PREFIX + secrets.token_hex(4)

    try:
        return asyncio.run(run_host(url, host_id, config))
    except KeyboardInterrupt:
        return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="couch-signal",
        description="Signaling relay for peer-to-peer remote control sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  couch-signal serve                       # Start with default settings
  couch-signal serve --port 9090           # Start on different port
  couch-signal stop                        # Stop the server
  couch-signal status                      # Check if running
  couch-signal connect --host host-mbp     # Connect as a controller
  couch-signal host --id host-mbp          # Register as a host
        """
    )
    parser.add_argument("--config", "-c", type=Path, help="Config file path")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the signaling server")
    serve_parser.add_argument("--host", type=str, help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", "-p", type=int, help="WebSocket port (default: 8080)")
    serve_parser.add_argument("--health-port", type=int, help="Health check port (default: 8081)")
    serve_parser.add_argument("--interval", type=float, help="Liveness sweep interval in seconds (default: 30)")
    serve_parser.set_defaults(func=cmd_serve)

    # Stop command
    stop_parser = subparsers.add_parser("stop", help="Stop the server")
    stop_parser.set_defaults(func=cmd_stop)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.set_defaults(func=cmd_status)

    # IP command
    ip_parser = subparsers.add_parser("ip", help="Show local IP address")
    ip_parser.set_defaults(func=cmd_ip)

    # Config command
    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    # Connect command
    connect_parser = subparsers.add_parser("connect", help="Run a headless controller")
    connect_parser.add_argument("--url", "-u", type=str, help="Signaling server URL")
    connect_parser.add_argument("--id", type=str, help="Controller ID (generated if omitted)")
    connect_parser.add_argument("--host", type=str, help="Host ID to connect to")
    connect_parser.set_defaults(func=cmd_connect)

    # Host command
    host_parser = subparsers.add_parser("host", help="Run a host that answers controllers")
    host_parser.add_argument("--url", "-u", type=str, help="Signaling server URL")
    host_parser.add_argument("--id", type=str, help="Host ID, must start with host- (generated if omitted)")
    host_parser.set_defaults(func=cmd_host)

    # Parse args
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
