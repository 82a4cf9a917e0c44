"""
Process-wide logging setup for inboxq.

Every module asks for `get_logger(__name__)`. The first call installs one
stream handler on the root logger; the CLI calls `configure_logging` first
when the user passes --log-level.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Final, TextIO

_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

_handler: logging.Handler | None = None


def _level_from(name: str | None) -> int:
    value = (name or os.getenv("INBOXQ_LOG_LEVEL") or "INFO").upper()
    level = logging.getLevelName(value)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> logging.Logger:
    """
    Install (or re-level) the root handler.

    Args:
        level: Level name; falls back to INBOXQ_LOG_LEVEL, then INFO
        stream: Output stream for the handler (stderr by default)

    Returns:
        The `inboxq` package logger
    """
    global _handler

    root = logging.getLogger()
    if _handler is None:
        _handler = logging.StreamHandler(stream or sys.stderr)
        _handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(_handler)

    package_logger = logging.getLogger("inboxq")
    package_logger.setLevel(_level_from(level))
    return package_logger


def get_logger(name: str) -> logging.Logger:
    """Module logger under the `inboxq` hierarchy; configures logging on first use."""
    if _handler is None:
        configure_logging()
    return logging.getLogger(name)
