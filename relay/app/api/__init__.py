"""API endpoints package for the relay."""

from relay.app.api.chat import router as chat_router
from relay.app.api.health import router as health_router

__all__ = [
    "chat_router",
    "health_router",
]
