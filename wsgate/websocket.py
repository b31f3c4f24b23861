"""
WebSocket wire protocol for the gateway.

Implements the RFC 6455 subset the gateway speaks: the HTTP upgrade
handshake, unmasked server frames and masked client frames.
"""

import base64
import hashlib
import struct
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# WebSocket magic string per RFC 6455
WEBSOCKET_MAGIC_STRING = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

# End of HTTP headers
HEADER_TERMINATOR = b"\r\n\r\n"

OPCODE_TEXT = 0x1
OPCODE_BINARY = 0x2
OPCODE_CLOSE = 0x8
OPCODE_PING = 0x9
OPCODE_PONG = 0xA

# FIN + close opcode
CLOSE_FRAME_BYTE = 0x88

MASK_LENGTH = 4


def generate_accept_key(sec_websocket_key: str) -> str:
    """
    Generate WebSocket accept key for upgrade response.

    Per RFC 6455 Section 1.3: SHA-1(key + magic_string), then base64 encode.

    Args:
        sec_websocket_key: Client's Sec-WebSocket-Key header value

    Returns:
        Sec-WebSocket-Accept value
    """
    key = sec_websocket_key + WEBSOCKET_MAGIC_STRING
    sha1 = hashlib.sha1(key.encode('utf-8')).digest()
    return base64.b64encode(sha1).decode('utf-8')


def extract_websocket_key(request: bytes) -> Optional[str]:
    """Return the Sec-WebSocket-Key header value, or None if absent or empty."""
    head = request.split(HEADER_TERMINATOR, 1)[0]
    lines = head.decode('latin-1').split('\r\n')
    # First line is the request line
    for line in lines[1:]:
        if ':' not in line:
            continue
        name, value = line.split(':', 1)
        if name.strip().lower() == 'sec-websocket-key':
            value = value.strip()
            return value or None
    return None


def create_upgrade_response(sec_websocket_key: str) -> bytes:
    """Create the 101 Switching Protocols response for a client key."""
    accept_key = generate_accept_key(sec_websocket_key)

    response = (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept_key}\r\n"
        "\r\n"
    )
    return response.encode('ascii')


def negotiate(request: bytes) -> Optional[bytes]:
    """
    Validate a buffered upgrade request and build the handshake response.

    Called once the pending buffer contains the header terminator. Has no
    side effects; the caller writes the response and promotes the
    connection.

    Args:
        request: Accumulated request bytes

    Returns:
        Response bytes, or None if the request carries no Sec-WebSocket-Key
    """
    key = extract_websocket_key(request)
    if key is None:
        return None
    return create_upgrade_response(key)


def encode_frame(payload: bytes, opcode: int = OPCODE_TEXT) -> bytes:
    """
    Encode an unmasked server-to-client WebSocket frame.

    Per RFC 6455 Section 5.2:
    - FIN bit = 1 (final frame)
    - RSV bits = 0
    - Mask = 0 (server to client frames are not masked)
    - Payload length: 7-bit, 16-bit extended (126) or 64-bit extended (127)

    Args:
        payload: Frame payload bytes
        opcode: Frame opcode (0x1 = text, 0x8 = close, 0xA = pong, ...)

    Returns:
        Encoded WebSocket frame bytes
    """
    payload_len = len(payload)
    first_byte = 0x80 | (opcode & 0x0F)

    if payload_len <= 125:
        header = struct.pack('!BB', first_byte, payload_len)
    elif payload_len <= 0xFFFF:
        header = struct.pack('!BBH', first_byte, 126, payload_len)
    else:
        header = struct.pack('!BBQ', first_byte, 127, payload_len)

    return header + payload


def encode_text_frame(payload: bytes) -> bytes:
    """Encode a single unmasked text frame (FIN=1, opcode 0x1)."""
    return encode_frame(payload, OPCODE_TEXT)


def frame_opcode(frame: bytes) -> Optional[int]:
    """Opcode of the frame starting at frame[0], or None on empty input."""
    if not frame:
        return None
    return frame[0] & 0x0F


def is_close_frame(frame: bytes) -> bool:
    """True if the data starts with a final close frame (0x88)."""
    return len(frame) >= 1 and frame[0] == CLOSE_FRAME_BYTE


def _parse_frame_header(data: bytes) -> Optional[Tuple[int, Optional[bytes], int, int]]:
    # (opcode, mask, payload_len, header_len), or None if the header is incomplete
    if len(data) < 2:
        return None

    opcode = data[0] & 0x0F
    masked = (data[1] >> 7) & 0x01
    payload_len = data[1] & 0x7F
    header_len = 2

    if payload_len == 126:
        if len(data) < 4:
            return None
        payload_len = struct.unpack('!H', data[2:4])[0]
        header_len = 4
    elif payload_len == 127:
        if len(data) < 10:
            return None
        payload_len = struct.unpack('!Q', data[2:10])[0]
        header_len = 10

    mask = None
    if masked:
        if len(data) < header_len + MASK_LENGTH:
            return None
        mask = bytes(data[header_len:header_len + MASK_LENGTH])
        header_len += MASK_LENGTH

    return opcode, mask, payload_len, header_len


def frame_length(data: bytes) -> Optional[int]:
    """
    Total length of the frame at the start of the data, header included.

    Returns None until enough of the header has arrived to know it.
    """
    header = _parse_frame_header(data)
    if header is None:
        return None
    _, _, payload_len, header_len = header
    return header_len + payload_len


def decode_client_frame(data: bytes) -> Tuple[Optional[int], Optional[bytes], int]:
    """
    Decode the client frame at the start of the data.

    Client frames are masked; an unmasked frame is accepted as-is.
    Opcodes are not acted on; close frames must be filtered out by the
    caller first. Bytes after the first frame are left for the next call.

    Args:
        data: Bytes buffered from an established client socket

    Returns:
        Tuple of (opcode, payload, bytes_consumed)
        Returns (None, None, 0) if the frame is incomplete
    """
    header = _parse_frame_header(data)
    if header is None:
        return None, None, 0
    opcode, mask, payload_len, header_len = header

    if len(data) < header_len + payload_len:
        return None, None, 0

    payload = bytes(data[header_len:header_len + payload_len])
    if mask:
        payload = bytes(b ^ mask[i % 4] for i, b in enumerate(payload))
    return opcode, payload, header_len + payload_len


def create_close_frame(code: int = 1000, reason: str = "") -> bytes:
    """
    Create a WebSocket close frame.

    Args:
        code: Close status code (1000 = normal closure, 1001 = going away)
        reason: Optional close reason

    Returns:
        Close frame bytes
    """
    payload = struct.pack('!H', code) + reason.encode('utf-8')
    return encode_frame(payload, opcode=OPCODE_CLOSE)
