"""
Process lifecycle for the gateway.

The process record is a small file "<pid>\\n<port>" that tells other
processes whether a gateway is running and where. It acts as a
single-instance lock: a record naming a live process blocks startup, a
record naming a dead process is stale and silently discarded.
"""

import os
import signal
import logging
from dataclasses import dataclass
from typing import Optional

from wsgate.config import DEFAULT_PORT

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Fatal gateway startup error."""
    pass


class GatewayAlreadyRunning(GatewayError):
    """A live gateway already holds the process record."""

    def __init__(self, pid: int, port: int):
        super().__init__(f"Gateway already running on port {port} (PID: {pid})")
        self.pid = pid
        self.port = port


class GatewayBindError(GatewayError):
    """The listening socket could not be bound."""
    pass


def _is_zombie(pid: int) -> bool:
    try:
        with open(f"/proc/{pid}/stat", "r") as f:
            stat = f.read()
    except OSError:
        return False
    # State is the first field after the parenthesised command name
    fields = stat.rsplit(")", 1)[-1].split()
    return bool(fields) and fields[0] == "Z"


def is_process_alive(pid: int) -> bool:
    """True if a process with this pid exists and has not exited."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return not _is_zombie(pid)


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    port: int

    @classmethod
    def read(cls, path: str) -> Optional["ProcessRecord"]:
        """
        Read a record from disk.

        Returns:
            The record, or None if the file is missing or unparseable
        """
        try:
            with open(path, "r") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read process record {path}: {e}")
            return None

        lines = data.split("\n")
        try:
            pid = int(lines[0].strip())
            port = int(lines[1].strip()) if len(lines) > 1 and lines[1].strip() else DEFAULT_PORT
        except ValueError:
            logger.warning(f"Malformed process record {path}: {data!r}")
            return None
        return cls(pid=pid, port=port)

    def write(self, path: str) -> None:
        record_dir = os.path.dirname(path)
        if record_dir:
            os.makedirs(record_dir, exist_ok=True)
        # Write then rename so readers never see a half-written record
        tmp_path = f"{path}.{self.pid}.tmp"
        with open(tmp_path, "w") as f:
            f.write(f"{self.pid}\n{self.port}")
        os.replace(tmp_path, path)

    @staticmethod
    def remove(path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove process record {path}: {e}")


def read_live_record(path: str) -> Optional[ProcessRecord]:
    """
    Return the process record if its process is alive.

    A record whose process no longer exists, or that cannot be parsed, is
    deleted and treated as absent.
    """
    if not os.path.exists(path):
        return None
    record = ProcessRecord.read(path)
    if record is not None and is_process_alive(record.pid):
        return record
    logger.info(f"Removing stale process record {path}")
    ProcessRecord.remove(path)
    return None


def claim_process_record(path: str) -> None:
    """
    Fail fast if another live gateway holds the record.

    Raises:
        GatewayAlreadyRunning: If the record names a different live process
    """
    record = read_live_record(path)
    if record is not None and record.pid != os.getpid():
        raise GatewayAlreadyRunning(record.pid, record.port)


def release_process_record(path: str) -> None:
    """Remove the record if it still names this process."""
    record = ProcessRecord.read(path)
    if record is None or record.pid == os.getpid():
        ProcessRecord.remove(path)
    else:
        logger.warning(f"Process record {path} belongs to PID {record.pid}; leaving it")


def install_signal_handlers(gateway) -> None:
    """
    Route SIGTERM/SIGINT to a graceful gateway shutdown.

    The handler only flags the loop; teardown happens on the loop's own
    thread after the current tick. Duplicate signals are ignored.
    """
    shutdown_initiated = False

    def signal_handler(sig, frame):
        nonlocal shutdown_initiated
        if shutdown_initiated:
            logger.debug("Shutdown already in progress, ignoring duplicate signal")
            return
        shutdown_initiated = True
        signal_name = "SIGTERM" if sig == signal.SIGTERM else "SIGINT"
        logger.info(f"Received {signal_name} signal - initiating graceful shutdown")
        gateway.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
