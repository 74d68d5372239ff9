"""
Centralized logging for the CookWire backend.

The app writes its own one-line access log (``cookwire.access``), so uvicorn's
access logger is silenced and its error logger is routed through the root
handler.

Usage:
    from cookwire.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("CookWire API listening on port %d", port)
    logger.warning("Could not set database file permissions: %s", err)
"""

import logging
import sys

ACCESS_LOGGER_NAME = "cookwire.access"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = False


def resolve_level(level) -> int:
    """Map a level name like ``"debug"`` to its numeric value, defaulting to INFO."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level="INFO") -> None:
    """Configure root logging once at startup; later calls only adjust the level."""
    global _configured
    numeric = resolve_level(level)
    if _configured:
        logging.getLogger().setLevel(numeric)
        return

    logging.basicConfig(
        level=numeric,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    logging.getLogger("uvicorn.access").disabled = True
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_access_logger() -> logging.Logger:
    """Logger used for the one-line-per-request access log."""
    return logging.getLogger(ACCESS_LOGGER_NAME)
