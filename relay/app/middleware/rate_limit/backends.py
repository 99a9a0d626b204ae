"""Rate limit backends.

Three interchangeable counters behind ``RateLimitBackend``:

- ``InMemoryRateLimiter``: fixed window, process-local
- ``RedisRateLimiter``: sliding window in Redis (``redis.asyncio``)
- ``UpstashRateLimiter``: the same sliding window over the Upstash REST API

The durable backends share one Lua script and one failure policy: a
backend error never escapes ``admit``. Depending on
``rate_limit_fail_closed`` the call is either denied or counted by a
process-local fallback counter.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Optional

import httpx
import redis
import redis.asyncio as aioredis

from relay.app.core.config import settings
from relay.app.core.http_client import create_http_client
from relay.app.core.logging import get_logger
from relay.app.middleware.rate_limit.models import (
    RateLimitDecision,
    RateLimitEntry,
    now_ms,
)
from relay.app.middleware.rate_limit.redis_lua import SLIDING_WINDOW_SCRIPT

logger = get_logger(__name__)


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends."""

    name: str = "base"

    @abstractmethod
    async def admit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Count one attempt for ``key`` and decide whether it is admitted.

        Args:
            key: Fully qualified counter key (prefix, scope and caller)
            limit: Maximum admitted attempts per window
            window_seconds: Window length in seconds

        Returns:
            RateLimitDecision for this attempt
        """

    async def cleanup(self) -> None:
        """Drop expired state. No-op where the store expires keys itself."""

    async def ping(self) -> bool:
        """Return True if the backing store is reachable."""
        return True

    async def close(self) -> None:
        """Release connections held by the backend."""


class InMemoryRateLimiter(RateLimitBackend):
    """Process-local fixed-window counter.

    Suitable for single-instance deployments and as the fallback when no
    durable backend is configured. Counters are not shared between worker
    processes.

    Memory is bounded: the map is an ``OrderedDict`` used as an LRU and
    the oldest 20% of entries are evicted once ``max_entries`` is exceeded.
    """

    name = "memory"

    def __init__(self, max_entries: int = 10000):
        self._max_entries = max_entries
        self._entries: OrderedDict[str, RateLimitEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _enforce_lru_limit(self) -> None:
        if len(self._entries) > self._max_entries:
            remove_count = max(1, int(self._max_entries * 0.2))
            for _ in range(min(remove_count, len(self._entries))):
                self._entries.popitem(last=False)

    async def admit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        async with self._lock:
            now = now_ms()
            window_ms = window_seconds * 1000

            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(count=0, reset_at_ms=now + window_ms)
                self._entries[key] = entry
                self._enforce_lru_limit()
            else:
                self._entries.move_to_end(key)

            if now > entry.reset_at_ms:
                entry.count = 0
                entry.reset_at_ms = now + window_ms

            if entry.count >= limit:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at_ms=entry.reset_at_ms,
                    limit=limit,
                )

            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, limit - entry.count),
                reset_at_ms=entry.reset_at_ms,
                limit=limit,
            )

    async def cleanup(self) -> None:
        async with self._lock:
            now = now_ms()
            expired = [key for key, entry in self._entries.items() if now > entry.reset_at_ms]
            for key in expired:
                del self._entries[key]


class DurableRateLimiter(RateLimitBackend):
    """Sliding-window limiter whose state lives in a shared Redis store.

    Subclasses only provide ``_eval_script``; decoding the script result
    and the failure policy live here.
    """

    def __init__(self, fail_closed: Optional[bool] = None):
        self.fail_closed = settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        self._fallback = InMemoryRateLimiter(max_entries=settings.rate_limit_max_entries)

    async def cleanup(self) -> None:
        # The store expires its own keys; only the fallback counter needs sweeping
        await self._fallback.cleanup()

    @abstractmethod
    async def _eval_script(self, key: str, args: list[Any]) -> list[Any]:
        """Run ``SLIDING_WINDOW_SCRIPT`` against ``key`` and return its result."""

    async def _admit_durable(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        now = now_ms()
        window_ms = window_seconds * 1000
        member = f"{now}-{uuid.uuid4().hex}"

        result = await self._eval_script(key, [now, window_ms, limit, member])
        allowed, count, oldest = (int(v) for v in result)

        return RateLimitDecision(
            allowed=bool(allowed),
            remaining=max(0, limit - count),
            reset_at_ms=oldest + window_ms,
            limit=limit,
        )

    async def _handle_backend_failure(
        self,
        error_type: str,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """Apply the fail-open/fail-closed policy after a backend error.

        Args:
            error_type: Type of error for logging purposes
        """
        if self.fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. Request denied.",
                extra={"backend": self.name},
            )
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_at_ms=now_ms() + window_seconds * 1000,
                limit=limit,
            )

        logger.warning(
            f"Rate limiting degraded to in-memory counter due to {error_type}.",
            extra={"backend": self.name},
        )
        return await self._fallback.admit(key, limit, window_seconds)


class RedisRateLimiter(DurableRateLimiter):
    """Redis-based distributed rate limiter using a sorted set per key."""

    name = "redis"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(fail_closed=fail_closed)
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client

    def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=settings.rate_limit_backend_timeout,
                socket_connect_timeout=settings.rate_limit_backend_timeout,
            )
        return self._redis

    async def _eval_script(self, key: str, args: list[Any]) -> list[Any]:
        return await self._get_redis().eval(SLIDING_WINDOW_SCRIPT, 1, key, *args)

    async def admit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        try:
            return await self._admit_durable(key, limit, window_seconds)
        except redis.ConnectionError as e:
            logger.error(f"Redis connection failed: {e}")
            return await self._handle_backend_failure("connection_error", key, limit, window_seconds)
        except redis.TimeoutError as e:
            logger.warning(f"Redis timeout: {e}")
            return await self._handle_backend_failure("timeout", key, limit, window_seconds)
        except redis.RedisError as e:
            logger.error(f"Redis error: {e}")
            return await self._handle_backend_failure("redis_error", key, limit, window_seconds)
        except Exception as e:
            logger.exception(f"Unexpected rate limit error: {e}")
            return await self._handle_backend_failure("unexpected", key, limit, window_seconds)

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class UpstashError(Exception):
    """Raised when the Upstash REST API answers with an ``error`` field."""


class UpstashRateLimiter(DurableRateLimiter):
    """Sliding-window limiter over the Upstash Redis REST API.

    Commands are posted as JSON arrays to the database URL with a bearer
    token, so no Redis wire connection is needed.
    """

    name = "upstash"

    def __init__(
        self,
        rest_url: Optional[str] = None,
        token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        fail_closed: Optional[bool] = None,
    ):
        super().__init__(fail_closed=fail_closed)
        self._rest_url = (rest_url or settings.upstash_redis_rest_url).rstrip("/")
        self._token = token or settings.upstash_redis_rest_token
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = create_http_client(timeout=settings.rate_limit_backend_timeout)
        return self._http_client

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _command(self, *command: Any) -> Any:
        resp = await self._get_client().post(
            self._rest_url,
            headers=self._headers,
            json=[str(part) for part in command],
        )
        data = resp.json() if resp.content else {}
        if resp.status_code >= 400 or "error" in data:
            raise UpstashError(data.get("error") or f"HTTP {resp.status_code}")
        return data.get("result")

    async def _eval_script(self, key: str, args: list[Any]) -> list[Any]:
        return await self._command("EVAL", SLIDING_WINDOW_SCRIPT, 1, key, *args)

    async def admit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        try:
            return await self._admit_durable(key, limit, window_seconds)
        except httpx.TimeoutException as e:
            logger.warning(f"Upstash timeout: {e}")
            return await self._handle_backend_failure("timeout", key, limit, window_seconds)
        except httpx.HTTPError as e:
            logger.error(f"Upstash connection failed: {e}")
            return await self._handle_backend_failure("connection_error", key, limit, window_seconds)
        except UpstashError as e:
            logger.error(f"Upstash error: {e}")
            return await self._handle_backend_failure("redis_error", key, limit, window_seconds)
        except Exception as e:
            logger.exception(f"Unexpected rate limit error: {e}")
            return await self._handle_backend_failure("unexpected", key, limit, window_seconds)

    async def ping(self) -> bool:
        try:
            resp = await self._get_client().get(f"{self._rest_url}/ping", headers=self._headers)
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Upstash ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
