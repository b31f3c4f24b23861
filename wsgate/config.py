"""
Configuration management for the WebSocket gateway.

Reads configuration from an optional .env file and environment variables
with sensible defaults.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/wsgate/wsgate.env")

DEFAULT_PORT = 8765

LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")

logger = logging.getLogger(__name__)


def _load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("WSGATE_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _int_env(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _float_env(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


@dataclass
class GatewayConfig:
    """Gateway configuration loaded from .env file and environment variables."""

    # Listening socket (loopback only)
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT

    # Control plane and process record
    control_socket_path: str = "/tmp/wsgate-control.sock"
    pid_file: str = "/tmp/wsgate.pid"
    control_read_timeout_sec: float = 1.0

    # Event loop
    pending_timeout_sec: float = 30.0
    tick_interval_ms: int = 10
    read_chunk_size: int = 65536
    max_handshake_bytes: int = 8192
    max_frame_bytes: int = 1048576
    slow_client_timeout_sec: float = 5.0

    # Reply policy
    echo_prefix: str = "Echo: "

    # Supervisor
    log_dir: str = "/tmp"
    startup_timeout_sec: float = 2.0
    stop_grace_sec: float = 0.5

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def tick_interval(self) -> float:
        """Inter-tick sleep in seconds."""
        return self.tick_interval_ms / 1000.0

    def server_log_path(self, port: int) -> Path:
        """Where a detached gateway on this port writes its output."""
        return Path(self.log_dir) / f"wsgate-{port}.log"

    @classmethod
    def load_config(cls) -> "GatewayConfig":
        """
        Load configuration from environment variables.

        Returns:
            GatewayConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        log_file = os.getenv("WSGATE_LOG_FILE") or None

        config = cls(
            host=os.getenv("WSGATE_HOST", "127.0.0.1"),
            port=_int_env("WSGATE_PORT", str(DEFAULT_PORT)),
            control_socket_path=os.getenv("WSGATE_CONTROL_SOCKET", "/tmp/wsgate-control.sock"),
            pid_file=os.getenv("WSGATE_PID_FILE", "/tmp/wsgate.pid"),
            control_read_timeout_sec=_float_env("WSGATE_CONTROL_READ_TIMEOUT_SEC", "1.0"),
            pending_timeout_sec=_float_env("WSGATE_PENDING_TIMEOUT_SEC", "30"),
            tick_interval_ms=_int_env("WSGATE_TICK_INTERVAL_MS", "10"),
            read_chunk_size=_int_env("WSGATE_READ_CHUNK_SIZE", "65536"),
            max_handshake_bytes=_int_env("WSGATE_MAX_HANDSHAKE_BYTES", "8192"),
            max_frame_bytes=_int_env("WSGATE_MAX_FRAME_BYTES", "1048576"),
            slow_client_timeout_sec=_float_env("WSGATE_SLOW_CLIENT_TIMEOUT_SEC", "5.0"),
            echo_prefix=os.getenv("WSGATE_ECHO_PREFIX", "Echo: "),
            log_dir=os.getenv("WSGATE_LOG_DIR", "/tmp"),
            startup_timeout_sec=_float_env("WSGATE_STARTUP_TIMEOUT_SEC", "2.0"),
            stop_grace_sec=_float_env("WSGATE_STOP_GRACE_SEC", "0.5"),
            log_level=os.getenv("WSGATE_LOG_LEVEL", "INFO"),
            log_file=log_file,
        )

        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.host not in LOOPBACK_HOSTS:
            raise ValueError(
                f"Invalid WSGATE_HOST: {self.host} (gateway binds to loopback only: "
                f"{', '.join(LOOPBACK_HOSTS)})"
            )

        # Port 0 asks the OS for an ephemeral port
        if self.port < 0 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port} (must be 0-65535)")

        if not self.control_socket_path:
            raise ValueError("Control socket path cannot be empty")

        if not self.pid_file:
            raise ValueError("PID file path cannot be empty")

        if self.pending_timeout_sec <= 0:
            raise ValueError(f"Invalid pending timeout: {self.pending_timeout_sec} (must be > 0)")

        if self.tick_interval_ms < 0:
            raise ValueError(f"Invalid tick interval: {self.tick_interval_ms} (must be >= 0)")

        if self.read_chunk_size <= 0:
            raise ValueError(f"Invalid read chunk size: {self.read_chunk_size} (must be > 0)")

        if self.max_handshake_bytes <= 0:
            raise ValueError(f"Invalid max handshake bytes: {self.max_handshake_bytes} (must be > 0)")

        if self.max_frame_bytes <= 0:
            raise ValueError(f"Invalid max frame bytes: {self.max_frame_bytes} (must be > 0)")

        if self.slow_client_timeout_sec <= 0:
            raise ValueError(
                f"Invalid slow client timeout: {self.slow_client_timeout_sec} (must be > 0)"
            )

        if self.control_read_timeout_sec <= 0:
            raise ValueError(
                f"Invalid control read timeout: {self.control_read_timeout_sec} (must be > 0)"
            )

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(valid_log_levels)})"
            )


def load_config() -> GatewayConfig:
    """
    Load and validate gateway configuration from environment variables.

    Returns:
        GatewayConfig instance with loaded and validated values

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return GatewayConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
