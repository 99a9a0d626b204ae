"""Upstream language-model providers.

- Base provider interface and upstream response handle (BaseProvider,
  UpstreamResponse)
- OpenRouter implementation with model fallback (OpenRouterProvider)
"""

from relay.app.providers.base import BaseProvider, UpstreamResponse
from relay.app.providers.openrouter import OpenRouterProvider

__all__ = [
    "BaseProvider",
    "UpstreamResponse",
    "OpenRouterProvider",
]
