# wsgate/gateway.py

import os
import socket
import time
import logging
from typing import Callable, Optional, Union

from wsgate.config import GatewayConfig
from wsgate.control import (
    ControlChannel,
    ControlCommand,
    ControlMessage,
    SHUTDOWN_RESPONSE,
    UNKNOWN_COMMAND_RESPONSE,
    format_broadcast_response,
    format_status_response,
)
from wsgate.lifecycle import (
    GatewayBindError,
    ProcessRecord,
    claim_process_record,
    release_process_record,
)
from wsgate.registry import ClientRegistry, Connection
from wsgate.websocket import (
    HEADER_TERMINATOR,
    OPCODE_CLOSE,
    OPCODE_PING,
    OPCODE_PONG,
    create_close_frame,
    decode_client_frame,
    encode_frame,
    encode_text_frame,
    frame_length,
    frame_opcode,
    is_close_frame,
    negotiate,
)

logger = logging.getLogger(__name__)

# Cap on accepts drained from the listen backlog in one tick
MAX_ACCEPTS_PER_TICK = 64

# Frames a client may have waiting before it counts as a slow consumer
MAX_OUTBOUND_FRAMES = 64

# Maps one received text payload to the single reply payload
ReplyPolicy = Callable[[bytes], bytes]


class EchoReply:
    """Reply policy that echoes the payload back with a prefix."""

    def __init__(self, prefix: str = "Echo: "):
        self.prefix = prefix.encode("utf-8")

    def __call__(self, payload: bytes) -> bytes:
        return self.prefix + payload


class Gateway:
    """
    Single-threaded WebSocket gateway.

    Every tick polls, in order: the listening socket, the control socket,
    each pending client, each established client. All sockets are
    non-blocking; the only wait is the fixed sleep between ticks in run().
    """

    def __init__(
        self,
        config: GatewayConfig,
        reply_policy: Optional[ReplyPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: Gateway configuration
            reply_policy: Reply for each text frame (default: echo with config.echo_prefix)
            clock: Monotonic time source for handshake, control read and slow client timeouts
        """
        self.config = config
        self.reply_policy = reply_policy or EchoReply(config.echo_prefix)
        self.registry = ClientRegistry()
        self.control = ControlChannel(
            config.control_socket_path,
            read_timeout=config.control_read_timeout_sec,
            clock=clock,
        )
        self._clock = clock
        self._server_sock: Optional[socket.socket] = None
        self._port: Optional[int] = None
        self._record_written = False
        self._shutdown_requested = False
        self.running = False

    @property
    def port(self) -> Optional[int]:
        """Actual bound port (differs from config.port when that is 0)."""
        return self._port

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Bind sockets and write the process record.

        Raises:
            GatewayAlreadyRunning: If a live gateway holds the process record
            GatewayBindError: If the listening or control socket cannot be bound
        """
        claim_process_record(self.config.pid_file)

        self._server_sock = self._bind_listener()
        try:
            self.control.open()
        except OSError as e:
            self._close_listener()
            raise GatewayBindError(
                f"Cannot bind control socket {self.config.control_socket_path}: {e}"
            ) from e

        ProcessRecord(pid=os.getpid(), port=self._port).write(self.config.pid_file)
        self._record_written = True
        self.running = True
        logger.info(f"WebSocket gateway started on {self.config.host}:{self._port}")

    def _bind_listener(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.config.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config.host, self.config.port))
            sock.listen(50)
        except OSError as e:
            sock.close()
            raise GatewayBindError(f"Cannot bind to port {self.config.port}: {e}") from e
        sock.setblocking(False)
        self._port = sock.getsockname()[1]
        return sock

    def _close_listener(self) -> None:
        if self._server_sock is not None:
            try:
                self._server_sock.close()
            except OSError:
                pass
            self._server_sock = None

    def request_shutdown(self) -> None:
        """Ask the loop to exit after the current tick."""
        self._shutdown_requested = True

    def stop(self) -> None:
        """Close every connection, remove the control socket and process record."""
        if not self.running and self._server_sock is None and not self.control.is_open:
            return
        logger.info("Stopping WebSocket gateway...")
        self.registry.close_all(create_close_frame(1001, "Gateway shutting down"))
        self._close_listener()
        self.control.close()
        if self._record_written:
            release_process_record(self.config.pid_file)
            self._record_written = False
        self.running = False
        logger.info("WebSocket gateway stopped")

    def run(self) -> None:
        """Run ticks until shutdown is requested, then tear down."""
        if not self.running:
            self.start()
        try:
            while not self._shutdown_requested:
                self.tick()
                time.sleep(self.config.tick_interval)
        finally:
            self.stop()

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """One pass over every socket. Never blocks on client I/O."""
        self._accept_clients()
        self._poll_control()

        now = self._clock()
        for conn in self.registry.pending():
            self._guarded(conn, self._service_pending, now)
        for conn in self.registry.established():
            self._guarded(conn, self._service_established, now)

    def _guarded(self, conn: Connection, handler, *args) -> None:
        # A failure on one connection must not stop the loop
        try:
            handler(conn, *args)
        except Exception as e:
            logger.error(f"Unexpected error on client {conn.id}: {e}", exc_info=True)
            self.registry.remove(conn.id, "internal error")

    def _accept_clients(self) -> None:
        if self._server_sock is None:
            return
        for _ in range(MAX_ACCEPTS_PER_TICK):
            try:
                client, addr = self._server_sock.accept()
            except BlockingIOError:
                return
            except OSError as e:
                logger.warning(f"Accept failed: {e}")
                return
            client.setblocking(False)
            conn = self.registry.add_pending(client, self._clock())
            logger.info(f"New connection (id: {conn.id}) from {addr[0]}:{addr[1]}")

    def _poll_control(self) -> None:
        for control_conn, message in self.control.poll():
            response = self.handle_control(message)
            self.control.respond(control_conn, response)

    def handle_control(self, message: ControlMessage) -> str:
        """Act on one control request and return the response line."""
        if message.kind is ControlCommand.BROADCAST:
            count = self.broadcast(message.payload)
            return format_broadcast_response(count)
        if message.kind is ControlCommand.STATUS:
            return format_status_response(self.status())
        if message.kind is ControlCommand.SHUTDOWN:
            logger.info("Shutdown requested via control socket")
            self.request_shutdown()
            return SHUTDOWN_RESPONSE
        logger.warning(f"Unknown control command: {message.raw!r}")
        return UNKNOWN_COMMAND_RESPONSE

    def _service_pending(self, conn: Connection, now: float) -> None:
        try:
            data = conn.sock.recv(self.config.read_chunk_size)
        except BlockingIOError:
            data = None
        except OSError as e:
            self.registry.remove(conn.id, f"read error: {e}")
            logger.info(f"Pending client {conn.id} disconnected")
            return

        if data == b"":
            self.registry.remove(conn.id, "peer closed during handshake")
            logger.info(f"Pending client {conn.id} disconnected")
            return

        if data:
            conn.inbound_buffer.extend(data)
            if HEADER_TERMINATOR in conn.inbound_buffer:
                self._complete_handshake(conn, now)
                return
            if len(conn.inbound_buffer) > self.config.max_handshake_bytes:
                self.registry.remove(conn.id, "handshake too large")
                logger.info(f"Client {conn.id} handshake failed (request too large)")
                return

        if now - conn.accepted_at > self.config.pending_timeout_sec:
            self.registry.remove(conn.id, "handshake timeout")
            logger.info(f"Pending client {conn.id} timed out")

    def _complete_handshake(self, conn: Connection, now: float) -> None:
        end = conn.inbound_buffer.find(HEADER_TERMINATOR) + len(HEADER_TERMINATOR)
        response = negotiate(bytes(conn.inbound_buffer[:end]))
        if response is None:
            self.registry.remove(conn.id, "handshake failed")
            logger.info(f"Client {conn.id} handshake failed")
            return
        try:
            conn.sock.sendall(response)
        except OSError as e:
            self.registry.remove(conn.id, f"handshake write error: {e}")
            logger.info(f"Client {conn.id} handshake failed")
            return
        self.registry.promote(conn.id, leftover=bytes(conn.inbound_buffer[end:]))
        conn.last_send_at = now
        logger.info(f"Client {conn.id} handshake complete")

    def _service_established(self, conn: Connection, now: float) -> None:
        try:
            data = conn.sock.recv(self.config.read_chunk_size)
        except BlockingIOError:
            data = None
        except OSError as e:
            self._drop(conn, f"read error: {e}")
            return

        if data == b"":
            self._drop(conn, "peer closed")
            return
        if data:
            conn.frame_buffer.extend(data)

        self._handle_frames(conn)
        if conn.is_established:
            self._flush(conn, now)

    def _handle_frames(self, conn: Connection) -> None:
        # Every complete frame in the buffer gets handled; a partial one waits
        buffer = conn.frame_buffer
        while buffer:
            if is_close_frame(buffer) or frame_opcode(buffer) == OPCODE_CLOSE:
                self.registry.remove(conn.id, "close frame")
                logger.info(f"Client {conn.id} closed connection")
                return

            length = frame_length(buffer)
            if length is not None and length > self.config.max_frame_bytes:
                self._drop(conn, f"frame of {length} bytes exceeds limit")
                return

            opcode, payload, consumed = decode_client_frame(buffer)
            if opcode is None:
                return
            del buffer[:consumed]

            if opcode == OPCODE_PONG:
                continue
            if opcode == OPCODE_PING:
                reply = encode_frame(payload, OPCODE_PONG)
            else:
                logger.debug(f"Received from {conn.id}: {payload[:200]!r}")
                reply = encode_text_frame(self.reply_policy(payload))
            if not self._queue(conn, reply):
                return

    def _queue(self, conn: Connection, frame: bytes) -> bool:
        """
        Queue a frame for a client and write as much as the socket takes.

        Frames leave in queue order, so a frame is never interleaved with
        the unsent tail of another.

        Returns:
            False if the client was dropped
        """
        now = self._clock()
        if len(conn.outbound) >= MAX_OUTBOUND_FRAMES:
            self._drop(conn, "outbound queue full")
            return False
        if not conn.outbound:
            conn.last_send_at = now
        conn.outbound.append(frame)
        return self._flush(conn, now)

    def _flush(self, conn: Connection, now: float) -> bool:
        while conn.outbound:
            frame = conn.outbound[0]
            try:
                sent = conn.sock.send(frame)
            except BlockingIOError:
                break
            except OSError as e:
                self._drop(conn, f"write error: {e}")
                return False
            conn.last_send_at = now
            if sent < len(frame):
                # Socket buffer full; keep the tail at the head of the queue
                conn.outbound[0] = frame[sent:]
                break
            conn.outbound.popleft()

        if conn.outbound and now - conn.last_send_at > self.config.slow_client_timeout_sec:
            self._drop(conn, f"no write progress for {now - conn.last_send_at:.1f}s")
            return False
        return True

    def _drop(self, conn: Connection, reason: str) -> None:
        self.registry.remove(conn.id, reason)
        logger.info(f"Client {conn.id} disconnected ({reason})")

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def broadcast(self, payload: Union[str, bytes]) -> int:
        """
        Send one text frame to every established client.

        The frame is encoded once and queued per client. A client whose
        socket fails, or that stops reading long enough to fall behind, is
        dropped; the others are unaffected.

        Returns:
            Number of clients the frame was addressed to
        """
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        frame = encode_text_frame(payload)
        recipients = self.registry.established()
        for conn in recipients:
            self._queue(conn, frame)
        logger.debug(f"Broadcast {len(payload)} bytes to {len(recipients)} clients")
        return len(recipients)

    def status(self) -> int:
        """Number of established clients."""
        return self.registry.established_count()
