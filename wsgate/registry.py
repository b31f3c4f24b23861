# wsgate/registry.py

import logging
import socket
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    PENDING = "pending"
    ESTABLISHED = "established"
    CLOSED = "closed"


@dataclass
class Connection:
    """One accepted client socket, its handshake progress and its frame buffers."""
    id: int
    sock: socket.socket
    accepted_at: float  # Monotonic time of accept
    state: ConnectionState = ConnectionState.PENDING
    inbound_buffer: bytearray = field(default_factory=bytearray)
    # Established only: received bytes not yet forming a whole frame
    frame_buffer: bytearray = field(default_factory=bytearray)
    # Established only: encoded frames (or the unsent tail of one) awaiting the socket
    outbound: deque = field(default_factory=deque)
    last_send_at: float = 0.0  # Monotonic time of last write progress

    @property
    def is_pending(self) -> bool:
        return self.state is ConnectionState.PENDING

    @property
    def is_established(self) -> bool:
        return self.state is ConnectionState.ESTABLISHED


class RegistryError(Exception):
    """Invalid state transition requested on the registry."""
    pass


class ClientRegistry:
    """
    Authoritative table of gateway connections.

    A single mapping keyed by connection id; the connection's state tag
    decides whether it is pending or established, so an id can never be
    in both sets. Only the event loop thread touches the registry.
    """

    def __init__(self):
        self._connections: Dict[int, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn_id: int) -> bool:
        return conn_id in self._connections

    def get(self, conn_id: int) -> Optional[Connection]:
        return self._connections.get(conn_id)

    def add_pending(self, sock: socket.socket, now: float) -> Connection:
        """
        Register a freshly accepted socket as a pending connection.

        The id is the socket's file descriptor at accept time.

        Args:
            sock: Accepted client socket (already non-blocking)
            now: Monotonic accept time

        Returns:
            The new Connection
        """
        conn_id = sock.fileno()
        stale = self._connections.pop(conn_id, None)
        if stale is not None:
            # Descriptor reused while an old entry lingered
            logger.warning(f"Replacing stale registry entry for id {conn_id}")
            self._close_socket(stale)
        conn = Connection(id=conn_id, sock=sock, accepted_at=now)
        self._connections[conn_id] = conn
        return conn

    def promote(self, conn_id: int, leftover: bytes = b"") -> Connection:
        """
        Move a pending connection to established.

        Args:
            conn_id: ID of a pending connection
            leftover: Bytes received after the handshake request; they start
                the frame buffer

        Raises:
            RegistryError: If the id is unknown or not pending
        """
        conn = self._connections.get(conn_id)
        if conn is None or not conn.is_pending:
            raise RegistryError(f"Connection {conn_id} is not pending")
        conn.state = ConnectionState.ESTABLISHED
        conn.inbound_buffer.clear()
        conn.frame_buffer.extend(leftover)
        return conn

    def remove(self, conn_id: int, reason: str = "") -> Optional[Connection]:
        """
        Close and forget a connection. Unknown ids are ignored.

        Args:
            conn_id: ID of connection to remove
            reason: Reason for removal (for logging)
        """
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return None
        self._close_socket(conn)
        logger.debug(f"Removed connection {conn_id}: {reason}")
        return conn

    def pending(self) -> List[Connection]:
        """Snapshot of pending connections, safe to mutate the registry while iterating."""
        return [c for c in self._connections.values() if c.is_pending]

    def established(self) -> List[Connection]:
        """Snapshot of established connections."""
        return [c for c in self._connections.values() if c.is_established]

    def pending_count(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_pending)

    def established_count(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_established)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def close_all(self, farewell: Optional[bytes] = None) -> int:
        """
        Close every connection.

        Args:
            farewell: Optional frame sent best-effort to established clients first

        Returns:
            Number of connections closed
        """
        closed = 0
        for conn_id in list(self._connections.keys()):
            conn = self._connections[conn_id]
            if farewell and conn.is_established:
                try:
                    conn.sock.send(farewell)
                except OSError:
                    pass
            self.remove(conn_id, "shutdown")
            closed += 1
        if closed:
            logger.info(f"Closed {closed} connection(s)")
        return closed

    @staticmethod
    def _close_socket(conn: Connection) -> None:
        conn.state = ConnectionState.CLOSED
        try:
            conn.sock.close()
        except OSError:
            pass
