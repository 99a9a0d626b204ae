"""Core utilities for the relay application."""

from relay.app.core.config import settings
from relay.app.core.http_client import get_http_client, init_http_client
from relay.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_http_client",
    "init_http_client",
    "get_logger",
    "setup_logging",
]
