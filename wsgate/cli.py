"""
Command line for the WebSocket gateway.

    python -m wsgate serve [--port N]     run in the foreground
    python -m wsgate start [--port N]     start detached
    python -m wsgate stop
    python -m wsgate status
    python -m wsgate broadcast MESSAGE [--type TYPE]
    python -m wsgate clients
    python -m wsgate info
"""

import argparse
import logging
import sys
from typing import Optional

from wsgate.config import load_config
from wsgate.control import ControlChannelUnavailable
from wsgate.gateway import Gateway
from wsgate.lifecycle import GatewayError, install_signal_handlers
from wsgate.log import setup_logging
from wsgate import manager

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsgate",
        description="Loopback WebSocket gateway with a local control socket",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the gateway in the foreground")
    serve.add_argument("--port", type=int, help="Port to listen on (overrides WSGATE_PORT)")

    start = sub.add_parser("start", help="Start the gateway in the background")
    start.add_argument("--port", type=int, help="Port to listen on (overrides WSGATE_PORT)")

    sub.add_parser("stop", help="Stop the running gateway")
    sub.add_parser("status", help="Check whether the gateway is running")

    broadcast = sub.add_parser("broadcast", help="Send a message to all connected clients")
    broadcast.add_argument("message", help="Message to broadcast")
    broadcast.add_argument(
        "--type",
        dest="msg_type",
        help="Wrap the message as JSON {type, data, timestamp}",
    )

    sub.add_parser("clients", help="Count connected clients")
    sub.add_parser("info", help="Show integration information")
    return parser


def _serve(config) -> int:
    gateway = Gateway(config)
    # A signal during start() only flags the loop, which then tears down
    install_signal_handlers(gateway)
    try:
        gateway.start()
    except GatewayError as e:
        logger.error(str(e))
        return 1
    print(f"WebSocket server started on port {gateway.port}", flush=True)
    print(f"Control socket: {config.control_socket_path}", flush=True)
    gateway.run()
    print("Server stopped", flush=True)
    return 0


def _status(config) -> int:
    status = manager.gateway_status(config)
    if status.running:
        print(
            "WebSocket Gateway: Running\n"
            f"  PID: {status.pid}\n"
            f"  Port: {status.port}\n"
            f"  URL: {status.url}"
        )
    else:
        print("WebSocket Gateway: Not running\n\nStart with: python -m wsgate start")
    return 0


def _start(config, port: Optional[int]) -> int:
    try:
        status = manager.start_gateway(config, port=port)
    except manager.GatewayStartError as e:
        print(str(e), file=sys.stderr)
        return 1
    if status.already_running:
        print(f"WebSocket server already running on port {status.port} (PID: {status.pid})")
        return 0
    print(
        "WebSocket Gateway started!\n"
        f"  PID: {status.pid}\n"
        f"  Port: {status.port}\n"
        f"  URL: {status.url}\n"
        f"  Log: {status.log_path}"
    )
    return 0


def _stop(config) -> int:
    pid = manager.stop_gateway(config)
    if pid is None:
        print("WebSocket server is not running")
    else:
        print(f"WebSocket server stopped (was PID: {pid})")
    return 0


def main(args: Optional[list] = None) -> int:
    """Parse arguments and run a command. Returns the process exit code."""
    parsed = build_parser().parse_args(args)

    try:
        config = load_config()
        if getattr(parsed, "port", None) is not None:
            config.port = parsed.port
            config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config.log_level, config.log_file)

    try:
        if parsed.command == "serve":
            return _serve(config)
        if parsed.command == "start":
            return _start(config, parsed.port)
        if parsed.command == "stop":
            return _stop(config)
        if parsed.command == "status":
            return _status(config)
        if parsed.command == "broadcast":
            print(manager.broadcast_message(config, parsed.message, parsed.msg_type))
            return 0
        if parsed.command == "clients":
            print(manager.client_count(config))
            return 0
        if parsed.command == "info":
            print(manager.gateway_info(config))
            return 0
    except manager.GatewayNotRunning as e:
        print(f"Error: {e}. Start with: python -m wsgate start", file=sys.stderr)
        return 1
    except ControlChannelUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 1
