"""Middleware package for the relay."""

from relay.app.middleware.rate_limit import RateLimiter, enforce_rate_limit
from relay.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimiter",
    "enforce_rate_limit",
    "RequestIdMiddleware",
    "get_request_id",
]
