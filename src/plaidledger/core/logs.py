from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}"


def configure_logging(level: str = "INFO") -> None:
    """Send loguru output to stderr; stdout is reserved for command output."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper())


def redact_token(token: str | None) -> str:
    """Loggable stand-in for an access or public token."""
    if not token:
        return "<none>"
    return f"{token[:9]}…(len={len(token)})"
