"""
Logging helpers for the credit ledger.

Level and optional log file come from CREDIT_LEDGER_LOG_LEVEL and
CREDIT_LEDGER_LOG_FILE unless passed explicitly; there is no settings file.
"""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional

LOG_LEVEL_ENV = "CREDIT_LEDGER_LOG_LEVEL"
LOG_FILE_ENV = "CREDIT_LEDGER_LOG_FILE"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_logging_configured = False
_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None, file: Optional[str] = None) -> None:
    """Install stderr (and optional file) handlers on the root logger."""
    global _logging_configured

    level_name = level or os.getenv(LOG_LEVEL_ENV, "INFO")
    file = file or os.getenv(LOG_FILE_ENV)
    resolved_level = getattr(logging, level_name.upper(), logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if file:
        try:
            Path(file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(file)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", file, exc)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    if not _logging_configured:
        with _logging_lock:
            if not _logging_configured:
                configure_logging()
    return logging.getLogger(name)
