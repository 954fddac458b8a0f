"""
Logging configuration for the shopfloor execution core.

Call setup_logging() once at process start; modules get their logger with
get_logger(__name__).
"""
import logging
import sys
from typing import Optional

from shopfloor.core.settings import settings

_ROOT_LOGGER = "shopfloor"
_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Attach a single handler to the shopfloor logger tree (idempotent)."""
    global _configured

    root = logging.getLogger(_ROOT_LOGGER)
    root.setLevel(level or settings.LOG_LEVEL)

    if _configured:
        return

    formatter = logging.Formatter(_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    target = log_file or settings.LOG_FILE
    if target:
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # SQL echo is controlled by DEBUG on the engine; keep sqlalchemy quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the shopfloor namespace."""
    if name == _ROOT_LOGGER or name.startswith(_ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_LOGGER}.{name}")
