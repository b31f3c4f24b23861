"""
Loopback WebSocket gateway.

A single-threaded, non-blocking server speaking the RFC 6455 text-frame
subset to browser clients, with a local control socket through which
other processes broadcast to those clients, query them and stop the
gateway.
"""

__version__ = "1.0.0"
