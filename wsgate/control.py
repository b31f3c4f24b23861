"""
Local control plane for the gateway.

A filesystem-scoped AF_UNIX socket accepting short-lived connections. Each
connection carries exactly one request line and receives one response
line, then is closed:

    broadcast:<text>  ->  Sent to N clients
    status            ->  Clients: N
    shutdown          ->  Shutting down
    anything else     ->  Unknown command

The socket file is owner-only (0600); it carries no other authentication.
"""

import os
import socket
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

BROADCAST_PREFIX = "broadcast:"

# Upper bound on one request line
MAX_CONTROL_LINE_BYTES = 65536

# Callers connected but not yet answered
MAX_PENDING_CONTROL = 16

UNKNOWN_COMMAND_RESPONSE = "Unknown command"
SHUTDOWN_RESPONSE = "Shutting down"


class ControlCommand(Enum):
    BROADCAST = "broadcast"
    STATUS = "status"
    SHUTDOWN = "shutdown"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ControlMessage:
    """One parsed control request."""
    kind: ControlCommand
    payload: str = ""
    raw: str = ""


class ControlChannelUnavailable(Exception):
    """The control socket is missing or refused the connection."""
    pass


def parse_control_message(line: str) -> ControlMessage:
    """
    Parse one request line into a ControlMessage.

    The broadcast payload is taken verbatim after the prefix; only the
    line break is stripped from it.
    """
    raw = line.rstrip("\r\n")
    if raw.startswith(BROADCAST_PREFIX):
        return ControlMessage(ControlCommand.BROADCAST, payload=raw[len(BROADCAST_PREFIX):], raw=raw)
    command = raw.strip()
    if command == "status":
        return ControlMessage(ControlCommand.STATUS, raw=raw)
    if command == "shutdown":
        return ControlMessage(ControlCommand.SHUTDOWN, raw=raw)
    return ControlMessage(ControlCommand.UNKNOWN, raw=raw)


def format_broadcast_response(count: int) -> str:
    return f"Sent to {count} clients"


def format_status_response(count: int) -> str:
    return f"Clients: {count}"


def read_line(sock: socket.socket, limit: int = MAX_CONTROL_LINE_BYTES) -> bytes:
    """Read until newline, EOF, timeout or limit. Returns what was read."""
    data = b""
    while b"\n" not in data and len(data) < limit:
        try:
            chunk = sock.recv(4096)
        except socket.timeout:
            break
        if not chunk:
            break
        data += chunk
    return data.split(b"\n", 1)[0]


@dataclass
class _PendingRequest:
    sock: socket.socket
    accepted_at: float
    buffer: bytearray = field(default_factory=bytearray)


class ControlChannel:
    """
    Server side of the control socket.

    Polled by the event loop. Accepted connections are kept in a small
    pending set and read without blocking across ticks until a full
    request line, end of stream, or the read timeout. poll() hands back
    every request that became complete; the event loop acts on each and
    calls respond().
    """

    def __init__(
        self,
        socket_path: str,
        read_timeout: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            socket_path: Path to Unix socket file (e.g., "/tmp/wsgate-control.sock")
            read_timeout: How long a caller may take to send its request line
            clock: Monotonic time source for the read timeout
        """
        self.socket_path = socket_path
        self.read_timeout = read_timeout
        self._clock = clock
        self._server_sock: Optional[socket.socket] = None
        self._pending: List[_PendingRequest] = []

    @property
    def is_open(self) -> bool:
        return self._server_sock is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def open(self) -> None:
        """
        Bind the control socket with owner-only permissions.

        Raises:
            OSError: If the socket cannot be created or bound
        """
        socket_dir = os.path.dirname(self.socket_path)
        if socket_dir:
            os.makedirs(socket_dir, mode=0o700, exist_ok=True)

        # Remove leftover socket file from a previous run
        try:
            if os.path.exists(self.socket_path):
                os.unlink(self.socket_path)
        except OSError as e:
            logger.warning(f"Could not remove existing socket file {self.socket_path}: {e}")

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        old_umask = os.umask(0o177)
        try:
            sock.bind(self.socket_path)
        except OSError:
            sock.close()
            raise
        finally:
            os.umask(old_umask)
        os.chmod(self.socket_path, 0o600)
        sock.listen(16)
        sock.setblocking(False)
        self._server_sock = sock
        logger.info(f"Control socket listening on {self.socket_path}")

    def poll(self) -> List[Tuple[socket.socket, ControlMessage]]:
        """
        Accept waiting callers and collect the requests that are complete.

        Never blocks. A caller that has not finished its line stays pending
        until a later tick; once read_timeout passes it is answered with
        whatever it sent.

        Returns:
            List of (connection, ControlMessage), possibly empty
        """
        if self._server_sock is None:
            return []
        self._accept_waiting()

        now = self._clock()
        ready = []
        for request in list(self._pending):
            line = self._read_request(request, now)
            if line is None:
                continue
            self._pending.remove(request)
            message = parse_control_message(line.decode("utf-8", errors="replace"))
            logger.debug(f"Control command: {message.kind.value}")
            ready.append((request.sock, message))
        return ready

    def _accept_waiting(self) -> None:
        while len(self._pending) < MAX_PENDING_CONTROL:
            try:
                conn, _ = self._server_sock.accept()
            except BlockingIOError:
                return
            except OSError as e:
                logger.warning(f"Control accept failed: {e}")
                return
            conn.setblocking(False)
            self._pending.append(_PendingRequest(sock=conn, accepted_at=self._clock()))

    def _read_request(self, request: _PendingRequest, now: float) -> Optional[bytes]:
        # Returns the request line once it is complete, else None
        try:
            chunk = request.sock.recv(4096)
        except BlockingIOError:
            chunk = None
        except OSError as e:
            logger.debug(f"Control read failed: {e}")
            chunk = b""

        if chunk:
            request.buffer.extend(chunk)
        if (
            b"\n" in request.buffer
            or len(request.buffer) >= MAX_CONTROL_LINE_BYTES
            or chunk == b""
            or now - request.accepted_at > self.read_timeout
        ):
            return bytes(request.buffer).split(b"\n", 1)[0]
        return None

    def respond(self, conn: socket.socket, response: str) -> None:
        """Write the one-line response and close the control connection."""
        try:
            conn.sendall((response + "\n").encode("utf-8"))
        except OSError as e:
            # Caller hung up without waiting for the answer
            logger.debug(f"Control response not delivered: {e}")
        finally:
            try:
                conn.close()
            except OSError:
                pass

    def close(self) -> None:
        """Close the control socket, drop unanswered callers and remove the file."""
        for request in self._pending:
            try:
                request.sock.close()
            except OSError:
                pass
        self._pending.clear()
        if self._server_sock is not None:
            try:
                self._server_sock.close()
            except OSError:
                pass
            self._server_sock = None
        try:
            if os.path.exists(self.socket_path):
                os.unlink(self.socket_path)
        except OSError as e:
            logger.warning(f"Could not remove control socket {self.socket_path}: {e}")


def send_control(socket_path: str, message: str, timeout: float = 5.0) -> str:
    """
    Send one request to a running gateway and return its response line.

    Args:
        socket_path: Control socket path
        message: Request line without trailing newline
        timeout: Connect/read timeout in seconds

    Raises:
        ControlChannelUnavailable: If the socket is missing or unreachable
    """
    if not os.path.exists(socket_path):
        raise ControlChannelUnavailable(
            f"Control socket not found at {socket_path}. Is the gateway running?"
        )

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        try:
            sock.connect(socket_path)
        except OSError as e:
            raise ControlChannelUnavailable(f"Cannot connect to control socket: {e}") from e
        try:
            sock.sendall((message + "\n").encode("utf-8"))
            response = read_line(sock)
        except OSError as e:
            raise ControlChannelUnavailable(f"Control exchange failed: {e}") from e
    finally:
        sock.close()
    return response.decode("utf-8", errors="replace").strip() or "No response"
