"""
Supervisor operations for a gateway running in another process.

These are what the surrounding tool layer calls: check whether a gateway
is running, start one detached, stop it (control-socket shutdown, then
SIGTERM, then SIGKILL), broadcast to its clients and count them.
"""

import json
import os
import signal
import subprocess
import sys
import time
import logging
from dataclasses import dataclass
from typing import Optional

from wsgate.config import GatewayConfig
from wsgate.control import ControlChannelUnavailable, send_control
from wsgate.lifecycle import ProcessRecord, is_process_alive, read_live_record

logger = logging.getLogger(__name__)

# Poll interval while waiting for a process record to appear or a pid to exit
POLL_INTERVAL_SEC = 0.05

# Wait after SIGTERM before escalating to SIGKILL
TERM_GRACE_SEC = 0.2


class GatewayStartError(Exception):
    """The gateway process did not come up."""
    pass


class GatewayNotRunning(Exception):
    """No live gateway process record."""
    pass


@dataclass
class GatewayStatus:
    running: bool
    pid: Optional[int] = None
    port: Optional[int] = None
    already_running: bool = False
    log_path: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        if self.port is None:
            return None
        return f"ws://localhost:{self.port}"


def gateway_status(config: GatewayConfig) -> GatewayStatus:
    """Status from the process record; a stale record is removed."""
    record = read_live_record(config.pid_file)
    if record is None:
        return GatewayStatus(running=False)
    return GatewayStatus(running=True, pid=record.pid, port=record.port)


def _wait_for_exit(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_alive(pid):
            return True
        time.sleep(POLL_INTERVAL_SEC)
    return not is_process_alive(pid)


def start_gateway(config: GatewayConfig, port: Optional[int] = None) -> GatewayStatus:
    """
    Start a detached gateway process.

    Args:
        config: Configuration shared with the spawned gateway
        port: Port to listen on (default: config.port)

    Returns:
        Status of the running gateway; already_running is set if one was up

    Raises:
        GatewayStartError: If no live process record appears in time
    """
    status = gateway_status(config)
    if status.running:
        status.already_running = True
        return status

    port = config.port if port is None else port
    log_path = config.server_log_path(port)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    env = os.environ.copy()
    env["WSGATE_HOST"] = config.host
    env["WSGATE_CONTROL_SOCKET"] = config.control_socket_path
    env["WSGATE_PID_FILE"] = config.pid_file
    env["WSGATE_ECHO_PREFIX"] = config.echo_prefix

    cmd = [sys.executable, "-m", "wsgate", "serve", "--port", str(port)]
    logger.info(f"Starting gateway: {' '.join(cmd)}")
    with open(log_path, "ab") as log_file:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )

    deadline = time.monotonic() + config.startup_timeout_sec
    while time.monotonic() < deadline:
        status = gateway_status(config)
        if status.running and status.pid == process.pid:
            status.log_path = str(log_path)
            return status
        if process.poll() is not None:
            break
        time.sleep(POLL_INTERVAL_SEC)

    if process.poll() is None:
        process.terminate()
        try:
            process.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            process.kill()
    raise GatewayStartError(f"Failed to start WebSocket gateway. Check {log_path}")


def stop_gateway(config: GatewayConfig) -> Optional[int]:
    """
    Stop the running gateway, escalating if it does not exit.

    Returns:
        PID of the stopped gateway, or None if none was running
    """
    status = gateway_status(config)
    if not status.running:
        return None

    pid = status.pid
    try:
        send_control(config.control_socket_path, "shutdown", timeout=2.0)
    except ControlChannelUnavailable as e:
        logger.warning(f"Graceful shutdown unavailable: {e}")

    if not _wait_for_exit(pid, config.stop_grace_sec):
        logger.warning(f"Gateway {pid} still running, sending SIGTERM")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        if not _wait_for_exit(pid, TERM_GRACE_SEC):
            logger.warning(f"Gateway {pid} unresponsive, sending SIGKILL")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    ProcessRecord.remove(config.pid_file)
    return pid


def _require_running(config: GatewayConfig) -> GatewayStatus:
    status = gateway_status(config)
    if not status.running:
        raise GatewayNotRunning("WebSocket gateway is not running")
    return status


def broadcast_message(config: GatewayConfig, message: str, msg_type: Optional[str] = None) -> str:
    """
    Broadcast a message to every connected client.

    With msg_type the message is wrapped as {"type", "data", "timestamp"}.

    Returns:
        The gateway's response line

    Raises:
        GatewayNotRunning: If no gateway is running
        ControlChannelUnavailable: If the control socket cannot be reached
    """
    _require_running(config)
    if msg_type:
        message = json.dumps({
            "type": msg_type,
            "data": message,
            "timestamp": int(time.time()),
        })
    # One request per line; the wire format cannot carry raw newlines
    message = message.replace("\r", " ").replace("\n", " ")
    return send_control(config.control_socket_path, f"broadcast:{message}")


def client_count(config: GatewayConfig) -> str:
    """The gateway's 'Clients: N' status line."""
    _require_running(config)
    return send_control(config.control_socket_path, "status")


def gateway_info(config: GatewayConfig) -> str:
    """Integration notes for embedding applications."""
    status = gateway_status(config)
    port = status.port if status.running else config.port
    state = f"Running on port {status.port}" if status.running else "Not running"
    return f"""# WebSocket Gateway

**Status**: {state}

## Browser Client Example

```javascript
const ws = new WebSocket('ws://localhost:{port}');
ws.onmessage = (event) => console.log(event.data);
ws.onclose = () => console.log('Disconnected');
```

## Control Socket

{config.control_socket_path} (one line per connection):

- `broadcast:<text>` send <text> to every connected client
- `status` count connected clients
- `shutdown` stop the gateway

## Commands

- `python -m wsgate start` start the gateway
- `python -m wsgate stop` stop the gateway
- `python -m wsgate broadcast MESSAGE` send to all clients
- `python -m wsgate clients` count connected clients
"""
