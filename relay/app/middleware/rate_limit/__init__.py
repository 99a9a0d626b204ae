"""Per-caller rate limiting for the relay endpoints.

Counters are keyed by ``(scope, caller)``, where the scope names an
endpoint class (chat, contact, telemetry) and the caller is the best
available client address. The backend is chosen once at startup from
configuration: Upstash REST, then Redis, then an in-memory counter.
"""

import asyncio
from typing import Mapping, Optional

from fastapi import Request

from relay.app.core.config import settings
from relay.app.core.logging import get_log_context, get_logger
from relay.app.exceptions import RateLimitExceededError
from relay.app.middleware.rate_limit.backends import (
    DurableRateLimiter,
    InMemoryRateLimiter,
    RateLimitBackend,
    RedisRateLimiter,
    UpstashError,
    UpstashRateLimiter,
)
from relay.app.middleware.rate_limit.models import (
    RateLimitDecision,
    RateLimitEntry,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "RateLimitDecision",
    "RateLimitEntry",
    # Backends
    "RateLimitBackend",
    "InMemoryRateLimiter",
    "DurableRateLimiter",
    "RedisRateLimiter",
    "UpstashRateLimiter",
    "UpstashError",
    # Main API
    "RateLimiter",
    "create_rate_limiter",
    "run_periodic_cleanup",
    "get_client_ip",
    "get_rate_limiter",
    "enforce_rate_limit",
    "rate_limit_headers",
]

LOOPBACK_PLACEHOLDER = "127.0.0.1"


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Derive the caller identity from forwarding headers.

    Precedence: first entry of ``X-Forwarded-For``, then ``X-Real-IP``,
    then ``CF-Connecting-IP``, then a loopback placeholder. These headers
    are client-controlled unless a trusted proxy overwrites them.
    """
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip and cf_ip.strip():
        return cf_ip.strip()
    return LOOPBACK_PLACEHOLDER


class RateLimiter:
    """Scope-aware limiter in front of a single backend."""

    def __init__(self, backend: RateLimitBackend, prefix: Optional[str] = None):
        self._backend = backend
        self.prefix = prefix or settings.rate_limit_prefix

    @property
    def backend(self) -> RateLimitBackend:
        return self._backend

    def key_for(self, caller_identity: str, scope: str) -> str:
        return f"{self.prefix}:{scope}:{caller_identity}"

    async def admit(
        self,
        caller_identity: str,
        scope: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """Count one attempt by ``caller_identity`` in ``scope``.

        Raises:
            ValueError: If limit or window_seconds is not positive
        """
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        return await self._backend.admit(
            self.key_for(caller_identity, scope), limit, window_seconds
        )

    async def cleanup(self) -> None:
        await self._backend.cleanup()

    async def ping(self) -> bool:
        return await self._backend.ping()

    async def close(self) -> None:
        await self._backend.close()


def create_rate_limiter(
    use_upstash: Optional[bool] = None,
    use_redis: Optional[bool] = None,
) -> RateLimiter:
    """Build the limiter with the backend selected from settings.

    Args:
        use_upstash: Force Upstash usage (None = credentials present)
        use_redis: Force Redis usage (None = ``redis_enabled``)
    """
    should_use_upstash = settings.upstash_configured if use_upstash is None else use_upstash
    should_use_redis = settings.redis_enabled if use_redis is None else use_redis

    backend: RateLimitBackend
    if should_use_upstash:
        backend = UpstashRateLimiter()
        logger.info("Using Upstash REST rate limiter backend")
    elif should_use_redis:
        backend = RedisRateLimiter()
        logger.info("Using Redis rate limiter backend")
    else:
        backend = InMemoryRateLimiter(max_entries=settings.rate_limit_max_entries)
        logger.debug("Using in-memory rate limiter backend")
    return RateLimiter(backend)


async def run_periodic_cleanup(limiter: RateLimiter, interval_seconds: float) -> None:
    """Sweep expired windows every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await limiter.cleanup()
        except Exception as e:
            logger.warning(f"Rate limiter cleanup failed: {e}")


def get_rate_limiter(request: Request) -> RateLimiter:
    """FastAPI dependency returning the application's limiter."""
    return request.app.state.rate_limiter


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at_ms // 1000),
    }


async def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter,
    scope: str,
) -> RateLimitDecision:
    """Admit the request under the limits configured for ``scope``.

    Raises:
        RateLimitExceededError: If the caller has no quota left
    """
    caller = get_client_ip(request.headers)
    limit, window_seconds = settings.rate_limit_for(scope)
    decision = await limiter.admit(caller, scope, limit, window_seconds)

    if not decision.allowed:
        retry_after = decision.retry_after_seconds()
        logger.info(
            "Rate limit exceeded",
            extra=get_log_context(
                request_id=getattr(request.state, "request_id", None),
                caller=caller,
                scope=scope,
                retry_after=retry_after,
            ),
        )
        raise RateLimitExceededError(retry_after=retry_after, headers=rate_limit_headers(decision))

    return decision
