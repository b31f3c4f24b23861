"""
Logging setup for the gateway process.
"""

import logging
import logging.handlers
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class _QuietWatchedFileHandler(logging.handlers.WatchedFileHandler):
    """WatchedFileHandler whose write failures degrade silently."""

    def emit(self, record):
        try:
            super().emit(record)
        except (IOError, OSError):
            pass

    def handleError(self, record):
        # Logging must never interrupt the event loop
        pass


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure root logging for the gateway.

    Args:
        level: Log level name
        log_file: Optional file to also write to; tolerant of external rotation
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if not log_file:
        return

    root = logging.getLogger()
    # Prevent duplicate handlers on repeated setup
    for h in root.handlers:
        if isinstance(h, logging.handlers.WatchedFileHandler) and \
                getattr(h, 'baseFilename', None) == os.path.abspath(log_file):
            return

    try:
        handler = _QuietWatchedFileHandler(log_file, mode='a')
    except OSError as e:
        logging.getLogger(__name__).warning(f"Could not open log file {log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
