"""
Runtime tests for the gateway event loop.

Gateways are driven tick by tick from the test, with a fake clock for
handshake timeouts, and spoken to over real loopback and Unix sockets.
"""

import logging
import os
import socket
import threading
import time

import httpx
import pytest

from wsgate.control import read_line, send_control
from wsgate.gateway import MAX_OUTBOUND_FRAMES, Gateway
from wsgate.lifecycle import GatewayAlreadyRunning, GatewayBindError, ProcessRecord
from wsgate.tests.contracts._gateway_harness import (
    control_request,
    dead_pid,
    drain,
    open_client,
    peer_closed,
    receive_while_ticking,
    tick_for,
    tick_until,
    wait_for_answer,
)
from wsgate.tests.websocket_client import (
    create_websocket_upgrade_request,
    encode_client_frame,
    expected_accept_key,
    read_frame,
    read_frames,
    read_websocket_response,
)
from wsgate.websocket import encode_text_frame


class TestStartup:

    def test_start_writes_process_record_and_control_socket(self, gateway):
        record = ProcessRecord.read(gateway.config.pid_file)
        assert record == ProcessRecord(pid=os.getpid(), port=gateway.port)
        assert os.path.exists(gateway.config.control_socket_path)

    def test_live_record_blocks_second_gateway(self, gateway_config):
        ProcessRecord(pid=os.getppid(), port=9999).write(gateway_config.pid_file)

        with pytest.raises(GatewayAlreadyRunning):
            Gateway(gateway_config).start()
        assert not os.path.exists(gateway_config.control_socket_path)

    def test_stale_record_is_replaced(self, gateway_config):
        ProcessRecord(pid=dead_pid(), port=9999).write(gateway_config.pid_file)

        gw = Gateway(gateway_config)
        gw.start()
        try:
            assert ProcessRecord.read(gateway_config.pid_file).pid == os.getpid()
        finally:
            gw.stop()

    def test_port_in_use_fails_without_writing_record(self, gateway_config):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        gateway_config.port = blocker.getsockname()[1]
        try:
            with pytest.raises(GatewayBindError):
                Gateway(gateway_config).start()
        finally:
            blocker.close()
        assert not os.path.exists(gateway_config.pid_file)
        assert not os.path.exists(gateway_config.control_socket_path)


class TestHandshake:

    def test_valid_upgrade_is_accepted(self, gateway):
        sock = socket.create_connection(("127.0.0.1", gateway.port), timeout=2.0)
        try:
            request, key = create_websocket_upgrade_request(port=gateway.port)
            sock.sendall(request)
            assert tick_until(gateway, lambda: gateway.status() == 1)

            status_code, headers, _ = read_websocket_response(sock)
            assert status_code == 101
            assert headers["sec-websocket-accept"] == expected_accept_key(key)
            assert gateway.registry.pending_count() == 0
        finally:
            sock.close()

    def test_request_split_across_reads(self, gateway):
        sock = open_client(gateway, handshake=False)
        try:
            request, _ = create_websocket_upgrade_request(port=gateway.port)
            sock.sendall(request[:20])
            assert tick_until(gateway, lambda: gateway.registry.pending_count() == 1)
            gateway.tick()
            assert gateway.status() == 0

            sock.sendall(request[20:])
            assert tick_until(gateway, lambda: gateway.status() == 1)
        finally:
            sock.close()

    def test_missing_key_closes_connection(self, gateway):
        sock = open_client(gateway, handshake=False)
        try:
            sock.sendall(b"GET / HTTP/1.1\r\nHost: localhost\r\nUpgrade: websocket\r\n\r\n")
            tick_for(gateway)

            assert peer_closed(sock)
            assert len(gateway.registry) == 0
            assert gateway.status() == 0
        finally:
            sock.close()

    def test_plain_http_request_is_rejected(self, gateway):
        worker = threading.Thread(target=gateway.run, daemon=True)
        worker.start()
        try:
            with pytest.raises(httpx.TransportError):
                httpx.get(f"http://127.0.0.1:{gateway.port}/", timeout=2.0, trust_env=False)
            assert gateway.status() == 0
        finally:
            gateway.request_shutdown()
            worker.join(timeout=2.0)

    def test_oversized_request_is_dropped(self, gateway):
        sock = open_client(gateway, handshake=False)
        try:
            sock.sendall(b"GET / HTTP/1.1\r\nX-Pad: " + b"a" * (gateway.config.max_handshake_bytes + 10))
            tick_for(gateway)

            assert peer_closed(sock)
            assert len(gateway.registry) == 0
        finally:
            sock.close()


class TestPendingTimeout:

    def test_silent_pending_client_is_removed_after_timeout(self, gateway, clock):
        sock = open_client(gateway, handshake=False)
        try:
            assert tick_until(gateway, lambda: gateway.registry.pending_count() == 1)

            clock.advance(29)
            gateway.tick()
            assert gateway.registry.pending_count() == 1

            clock.advance(2)
            gateway.tick()
            assert gateway.registry.pending_count() == 0
            assert control_request(gateway, "status") == "Clients: 0"
            assert sock.recv(1024) == b""
        finally:
            sock.close()

    def test_timeout_does_not_affect_established_clients(self, gateway, clock):
        sock = open_client(gateway)
        try:
            clock.advance(120)
            gateway.tick()
            assert gateway.status() == 1
        finally:
            sock.close()


class TestEstablishedClients:

    def test_text_frame_gets_exactly_one_echo(self, gateway):
        sock = open_client(gateway)
        try:
            sock.sendall(encode_client_frame(b"hello"))
            tick_for(gateway, 5)

            opcode, payload = read_frame(sock)
            assert opcode == 0x1
            assert payload == b"Echo: hello"
            assert read_frame(sock, timeout=0.2) == (None, None)
        finally:
            sock.close()

    def test_medium_frame_uses_extended_length(self, gateway):
        sock = open_client(gateway)
        try:
            payload = b"m" * 300
            sock.sendall(encode_client_frame(payload))
            tick_for(gateway, 5)

            opcode, reply = read_frame(sock)
            assert reply == b"Echo: " + payload
        finally:
            sock.close()

    def test_custom_reply_policy(self, gateway_config):
        gw = Gateway(gateway_config, reply_policy=lambda payload: payload.upper())
        gw.start()
        sock = open_client(gw)
        try:
            sock.sendall(encode_client_frame(b"shout"))
            tick_for(gw, 5)
            assert read_frame(sock) == (0x1, b"SHOUT")
        finally:
            sock.close()
            gw.stop()

    def test_close_frame_removes_client_without_reply(self, gateway):
        sock = open_client(gateway)
        try:
            sock.sendall(b"\x88\x00")
            assert tick_until(gateway, lambda: gateway.status() == 0)

            assert peer_closed(sock)
        finally:
            sock.close()

    def test_peer_disconnect_removes_client(self, gateway):
        sock = open_client(gateway)
        sock.close()
        assert tick_until(gateway, lambda: gateway.status() == 0)

    def test_ping_is_answered_with_pong(self, gateway):
        sock = open_client(gateway)
        try:
            sock.sendall(encode_client_frame(b"are you there", opcode=0x9))
            tick_for(gateway, 5)
            assert read_frame(sock) == (0xA, b"are you there")
            assert gateway.status() == 1
        finally:
            sock.close()

    def test_partial_frame_waits_for_the_rest(self, gateway):
        sock = open_client(gateway)
        try:
            frame = encode_client_frame(b"incomplete")
            sock.sendall(frame[:5])
            tick_for(gateway, 5)
            assert read_frame(sock, timeout=0.2) == (None, None)
            assert gateway.status() == 1

            sock.sendall(frame[5:])
            tick_for(gateway, 5)
            assert read_frame(sock) == (0x1, b"Echo: incomplete")
        finally:
            sock.close()

    def test_frames_in_one_read_each_get_a_reply(self, gateway):
        sock = open_client(gateway)
        try:
            sock.sendall(encode_client_frame(b"one") + encode_client_frame(b"two"))
            tick_for(gateway, 5)

            assert read_frames(sock, 2) == [(0x1, b"Echo: one"), (0x1, b"Echo: two")]
            assert read_frame(sock, timeout=0.2) == (None, None)
        finally:
            sock.close()

    def test_frame_larger_than_one_read_is_reassembled(self, gateway):
        sock = open_client(gateway)
        try:
            # With a zero mask the byte that starts the second read looks
            # like a close frame if it were taken as a frame boundary
            payload = bytearray(b"p" * 70000)
            payload[gateway.config.read_chunk_size - 14] = 0x88
            sock.sendall(encode_client_frame(bytes(payload), mask=b"\x00\x00\x00\x00"))
            tick_for(gateway, 10)
            assert drain(gateway)

            assert read_frame(sock, timeout=5.0) == (0x1, b"Echo: " + bytes(payload))
            assert gateway.status() == 1
        finally:
            sock.close()

    def test_frame_sent_with_handshake_is_answered(self, gateway):
        sock = open_client(gateway, handshake=False)
        try:
            request, _ = create_websocket_upgrade_request(port=gateway.port)
            sock.sendall(request + encode_client_frame(b"eager"))
            assert tick_until(gateway, lambda: gateway.status() == 1)
            tick_for(gateway, 5)

            status_code, _, body = read_websocket_response(sock)
            assert status_code == 101
            assert read_frame(sock, buffer=body) == (0x1, b"Echo: eager")
        finally:
            sock.close()

    def test_close_frame_after_text_frame_in_one_read(self, gateway):
        sock = open_client(gateway)
        try:
            sock.sendall(encode_client_frame(b"last words") + encode_client_frame(b"", opcode=0x8))
            assert tick_until(gateway, lambda: gateway.status() == 0)

            assert read_frame(sock) == (0x1, b"Echo: last words")
        finally:
            sock.close()

    def test_oversized_frame_drops_client(self, gateway):
        gateway.config.max_frame_bytes = 1024
        sock = open_client(gateway)
        try:
            sock.sendall(encode_client_frame(b"x" * 2048)[:100])
            assert tick_until(gateway, lambda: gateway.status() == 0)
        finally:
            sock.close()


class TestSlowConsumers:
    """Clients that stop reading are queued for, then dropped; others keep going."""

    def _stall(self, gateway) -> socket.socket:
        sock = open_client(gateway, rcvbuf=4096)
        conn = gateway.registry.established()[-1]
        conn.sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4096)
        return sock

    def test_backlog_is_delivered_whole_and_in_order(self, gateway):
        sock = self._stall(gateway)
        try:
            big = b"x" * 1_000_000
            assert gateway.broadcast(big) == 1
            assert gateway.broadcast("hello") == 1
            assert gateway.status() == 1
            assert gateway.registry.established()[0].outbound

            expected = encode_text_frame(big) + encode_text_frame(b"hello")
            assert receive_while_ticking(gateway, sock, len(expected)) == expected
            assert gateway.status() == 1
        finally:
            sock.close()

    def test_stalled_client_is_dropped_after_timeout(self, gateway, clock):
        healthy = open_client(gateway)
        stalled = self._stall(gateway)
        try:
            big_frame = encode_text_frame(b"x" * 1_000_000)
            gateway.broadcast(b"x" * 1_000_000)
            assert receive_while_ticking(gateway, healthy, len(big_frame)) == big_frame
            assert gateway.status() == 2

            clock.advance(gateway.config.slow_client_timeout_sec - 1)
            gateway.tick()
            assert gateway.status() == 2

            clock.advance(2)
            gateway.tick()
            assert gateway.status() == 1

            assert gateway.broadcast("hello") == 1
            assert read_frame(healthy) == (0x1, b"hello")
        finally:
            healthy.close()
            stalled.close()

    def test_full_outbound_queue_drops_client(self, gateway):
        sock = self._stall(gateway)
        try:
            gateway.broadcast(b"x" * 1_000_000)
            for i in range(MAX_OUTBOUND_FRAMES):
                gateway.broadcast(f"update {i}")
            assert gateway.status() == 0
        finally:
            sock.close()


class TestControlPlane:

    def test_silent_control_caller_does_not_stall_clients(self, gateway, clock):
        client = open_client(gateway)
        silent = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        silent.settimeout(2.0)
        try:
            silent.connect(gateway.config.control_socket_path)
            started = time.monotonic()
            client.sendall(encode_client_frame(b"still here"))
            tick_for(gateway, 5)

            assert read_frame(client) == (0x1, b"Echo: still here")
            assert time.monotonic() - started < 0.25
            assert control_request(gateway, "status") == "Clients: 1"

            clock.advance(gateway.config.control_read_timeout_sec + 1)
            assert wait_for_answer(gateway, silent)
            assert read_line(silent) == b"Unknown command"
        finally:
            client.close()
            silent.close()

    def test_status_counts_established_clients(self, gateway):
        clients = [open_client(gateway) for _ in range(4)]
        pending = open_client(gateway, handshake=False)
        try:
            assert tick_until(gateway, lambda: gateway.registry.pending_count() == 1)
            assert control_request(gateway, "status") == "Clients: 4"
        finally:
            for sock in clients + [pending]:
                sock.close()

    def test_broadcast_reaches_every_client_once(self, gateway):
        clients = [open_client(gateway) for _ in range(3)]
        try:
            assert control_request(gateway, "broadcast:hello") == "Sent to 3 clients"
            for sock in clients:
                assert read_frame(sock) == (0x1, b"hello")
                assert read_frame(sock, timeout=0.1) == (None, None)
        finally:
            for sock in clients:
                sock.close()

    def test_broadcast_without_clients(self, gateway):
        assert control_request(gateway, "broadcast:anyone?") == "Sent to 0 clients"

    def test_broadcast_skips_pending_clients(self, gateway):
        established = open_client(gateway)
        pending = open_client(gateway, handshake=False)
        try:
            assert tick_until(gateway, lambda: gateway.registry.pending_count() == 1)
            assert control_request(gateway, "broadcast:x") == "Sent to 1 clients"
            pending.settimeout(0.2)
            with pytest.raises(socket.timeout):
                pending.recv(16)
        finally:
            established.close()
            pending.close()

    def test_unknown_command(self, gateway):
        assert control_request(gateway, "reboot") == "Unknown command"
        assert not gateway.shutdown_requested

    def test_shutdown_command_flags_loop(self, gateway):
        assert control_request(gateway, "shutdown") == "Shutting down"
        assert gateway.shutdown_requested

    def test_shutdown_removes_files_and_exits_loop(self, gateway):
        client = open_client(gateway)
        worker = threading.Thread(target=gateway.run, daemon=True)
        worker.start()
        try:
            response = send_control(gateway.config.control_socket_path, "shutdown", timeout=2.0)
            worker.join(timeout=2.0)

            assert response == "Shutting down"
            assert not worker.is_alive()
            assert not os.path.exists(gateway.config.pid_file)
            assert not os.path.exists(gateway.config.control_socket_path)
            assert read_frame(client)[0] == 0x8
        finally:
            client.close()


class TestLogging:

    def test_connection_events_are_logged(self, gateway, caplog):
        caplog.set_level(logging.INFO, logger="wsgate.gateway")
        sock = open_client(gateway)
        sock.sendall(b"\x88\x00")
        assert tick_until(gateway, lambda: gateway.status() == 0)
        sock.close()

        assert "New connection" in caplog.text
        assert "handshake complete" in caplog.text
        assert "closed connection" in caplog.text
