"""
Shared utilities for the CookWire backend.
"""
from .logger import get_access_logger, get_logger, resolve_level, setup_logging

__all__ = [
    "resolve_level",
    "get_logger",
    "get_access_logger",
    "setup_logging",
]
