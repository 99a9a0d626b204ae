"""Tests for the rate limiter and its backends."""

import asyncio
import json

import httpx
import pytest
import redis
import respx
from unittest.mock import AsyncMock, Mock, patch
from starlette.datastructures import Headers

from relay.app.middleware.rate_limit import (
    InMemoryRateLimiter,
    RateLimitDecision,
    RateLimiter,
    RedisRateLimiter,
    UpstashRateLimiter,
    create_rate_limiter,
    get_client_ip,
    rate_limit_headers,
    run_periodic_cleanup,
)
from relay.app.middleware.rate_limit.redis_lua import SLIDING_WINDOW_SCRIPT


UPSTASH_URL = "https://example-db.upstash.io"


class TestInMemoryRateLimiter:
    """Tests for the fixed-window in-memory counter."""

    @pytest.fixture
    def limiter(self):
        return InMemoryRateLimiter(max_entries=100)

    @pytest.mark.asyncio
    async def test_first_attempt_opens_window(self, limiter):
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000_000):
            decision = await limiter.admit("k", 10, 60)

        assert decision.allowed is True
        assert decision.remaining == 9
        assert decision.reset_at_ms == 1_000_000 + 60_000
        assert decision.limit == 10

    @pytest.mark.asyncio
    async def test_remaining_counts_down_to_zero(self, limiter):
        remaining = [(await limiter.admit("k", 3, 60)).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_blocks_over_limit(self, limiter):
        for _ in range(10):
            assert (await limiter.admit("k", 10, 60)).allowed is True

        decision = await limiter.admit("k", 10, 60)
        assert decision.allowed is False
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_denial_does_not_extend_window(self, limiter):
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000):
            first = await limiter.admit("k", 1, 60)
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=30_000):
            denied = await limiter.admit("k", 1, 60)

        assert denied.allowed is False
        assert denied.reset_at_ms == first.reset_at_ms

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, limiter):
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000):
            await limiter.admit("k", 1, 60)
            assert (await limiter.admit("k", 1, 60)).allowed is False

        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000 + 60_001):
            decision = await limiter.admit("k", 1, 60)

        assert decision.allowed is True
        assert decision.remaining == 0
        assert decision.reset_at_ms == 1_000 + 60_001 + 60_000

    @pytest.mark.asyncio
    async def test_different_keys_independent(self, limiter):
        for _ in range(2):
            await limiter.admit("key1", 2, 60)
        assert (await limiter.admit("key1", 2, 60)).allowed is False

        assert (await limiter.admit("key2", 2, 60)).allowed is True

    @pytest.mark.asyncio
    async def test_lru_eviction_bounds_memory(self):
        limiter = InMemoryRateLimiter(max_entries=10)
        for i in range(11):
            await limiter.admit(f"key{i}", 5, 60)

        # 20% of max_entries evicted once the bound is crossed
        assert len(limiter) == 9
        # Oldest key was evicted, so it starts a fresh window
        assert (await limiter.admit("key0", 5, 60)).remaining == 4

    @pytest.mark.asyncio
    async def test_cleanup_drops_expired_entries(self, limiter):
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000):
            await limiter.admit("old", 5, 1)
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_500):
            await limiter.admit("fresh", 5, 60)

        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=5_000):
            await limiter.cleanup()

        assert len(limiter) == 1


class TestRateLimitDecision:
    def test_denied_decision_has_no_remaining(self):
        decision = RateLimitDecision(allowed=False, remaining=5, reset_at_ms=0)
        assert decision.remaining == 0

    def test_retry_after_rounds_up(self):
        decision = RateLimitDecision(allowed=False, remaining=0, reset_at_ms=10_001)
        assert decision.retry_after_seconds(at_ms=0) == 11

    def test_retry_after_never_negative(self):
        decision = RateLimitDecision(allowed=False, remaining=0, reset_at_ms=1_000)
        assert decision.retry_after_seconds(at_ms=50_000) == 0

    def test_rate_limit_headers(self):
        decision = RateLimitDecision(allowed=True, remaining=4, reset_at_ms=120_500, limit=10)
        assert rate_limit_headers(decision) == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "4",
            "X-RateLimit-Reset": "120",
        }


class TestRateLimiter:
    """Tests for the scope-aware limiter facade."""

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self):
        limiter = RateLimiter(InMemoryRateLimiter(), prefix="test")
        for _ in range(2):
            await limiter.admit("1.2.3.4", "chat", 2, 60)
        assert (await limiter.admit("1.2.3.4", "chat", 2, 60)).allowed is False

        assert (await limiter.admit("1.2.3.4", "contact", 2, 60)).allowed is True

    def test_key_layout(self):
        limiter = RateLimiter(InMemoryRateLimiter(), prefix="relay:rl")
        assert limiter.key_for("1.2.3.4", "chat") == "relay:rl:chat:1.2.3.4"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,window", [(0, 60), (10, 0), (-1, 60)])
    async def test_rejects_non_positive_limits(self, limit, window):
        limiter = RateLimiter(InMemoryRateLimiter())
        with pytest.raises(ValueError):
            await limiter.admit("1.2.3.4", "chat", limit, window)


class TestGetClientIp:
    """Caller identity derivation from forwarding headers."""

    def test_forwarded_for_first_entry(self):
        headers = Headers({"X-Forwarded-For": "1.2.3.4, 5.6.6.7", "X-Real-IP": "9.9.9.9"})
        assert get_client_ip(headers) == "1.2.3.4"

    def test_forwarded_for_is_trimmed(self):
        assert get_client_ip(Headers({"x-forwarded-for": "  1.2.3.4  ,5.6.6.7"})) == "1.2.3.4"

    def test_real_ip_when_no_forwarded_for(self):
        headers = Headers({"X-Real-IP": "9.9.9.9", "CF-Connecting-IP": "8.8.8.8"})
        assert get_client_ip(headers) == "9.9.9.9"

    def test_cloudflare_header(self):
        assert get_client_ip(Headers({"CF-Connecting-IP": "8.8.8.8"})) == "8.8.8.8"

    def test_loopback_placeholder(self):
        assert get_client_ip(Headers({})) == "127.0.0.1"

    def test_derivation_is_stable(self):
        headers = Headers({"X-Forwarded-For": "1.2.3.4, 5.6.6.7"})
        assert get_client_ip(headers) == get_client_ip(headers)


class TestCreateRateLimiter:
    """Backend selection from configuration."""

    def test_memory_by_default(self):
        limiter = create_rate_limiter(use_upstash=False, use_redis=False)
        assert isinstance(limiter.backend, InMemoryRateLimiter)

    def test_redis_when_enabled(self):
        limiter = create_rate_limiter(use_upstash=False, use_redis=True)
        assert isinstance(limiter.backend, RedisRateLimiter)

    def test_upstash_preferred_over_redis(self):
        limiter = create_rate_limiter(use_upstash=True, use_redis=True)
        assert isinstance(limiter.backend, UpstashRateLimiter)

    def test_selection_follows_settings(self):
        with patch("relay.app.middleware.rate_limit.settings") as mock_settings:
            mock_settings.upstash_configured = False
            mock_settings.redis_enabled = True
            mock_settings.rate_limit_prefix = "relay:rl"
            limiter = create_rate_limiter()

        assert isinstance(limiter.backend, RedisRateLimiter)


class TestRedisRateLimiter:
    """Tests for the Redis sliding-window backend."""

    @pytest.fixture
    def mock_redis(self):
        client = Mock()
        client.eval = AsyncMock(return_value=[1, 3, 1_000_000])
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_admit_runs_sliding_window_script(self, mock_redis):
        limiter = RedisRateLimiter(redis_client=mock_redis, fail_closed=False)

        decision = await limiter.admit("relay:rl:chat:1.2.3.4", 10, 60)

        assert decision.allowed is True
        assert decision.remaining == 7
        assert decision.reset_at_ms == 1_000_000 + 60_000

        args = mock_redis.eval.call_args.args
        assert args[0] == SLIDING_WINDOW_SCRIPT
        assert args[1] == 1
        assert args[2] == "relay:rl:chat:1.2.3.4"
        # now, window_ms, limit, member
        assert args[4] == 60_000
        assert args[5] == 10
        assert str(args[6]).startswith(str(args[3]))

    @pytest.mark.asyncio
    async def test_denied_by_script(self, mock_redis):
        mock_redis.eval.return_value = [0, 10, 1_000_000]
        limiter = RedisRateLimiter(redis_client=mock_redis, fail_closed=False)

        decision = await limiter.admit("k", 10, 60)

        assert decision.allowed is False
        assert decision.remaining == 0

    @pytest.mark.asyncio
    async def test_connection_error_degrades_to_memory(self, mock_redis):
        mock_redis.eval.side_effect = redis.ConnectionError("refused")
        limiter = RedisRateLimiter(redis_client=mock_redis, fail_closed=False)

        results = [await limiter.admit("k", 2, 60) for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]

    @pytest.mark.asyncio
    async def test_fail_closed_denies_on_error(self, mock_redis):
        mock_redis.eval.side_effect = redis.TimeoutError("slow")
        limiter = RedisRateLimiter(redis_client=mock_redis, fail_closed=True)

        decision = await limiter.admit("k", 10, 60)

        assert decision.allowed is False
        assert decision.retry_after_seconds() > 0

    @pytest.mark.asyncio
    async def test_unexpected_error_never_raises(self, mock_redis):
        mock_redis.eval.side_effect = ValueError("bad reply")
        limiter = RedisRateLimiter(redis_client=mock_redis, fail_closed=False)

        decision = await limiter.admit("k", 10, 60)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_ping_and_close(self, mock_redis):
        limiter = RedisRateLimiter(redis_client=mock_redis)
        assert await limiter.ping() is True

        await limiter.close()
        mock_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ping_failure(self, mock_redis):
        mock_redis.ping.side_effect = redis.ConnectionError("down")
        limiter = RedisRateLimiter(redis_client=mock_redis)
        assert await limiter.ping() is False


class TestUpstashRateLimiter:
    """Tests for the Upstash REST backend."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_admit_posts_eval_command(self):
        route = respx.post(UPSTASH_URL).mock(
            return_value=httpx.Response(200, json={"result": [1, 1, 5_000]})
        )
        async with httpx.AsyncClient() as client:
            limiter = UpstashRateLimiter(
                rest_url=UPSTASH_URL, token="secret-token", http_client=client, fail_closed=False
            )
            decision = await limiter.admit("relay:rl:chat:1.2.3.4", 10, 60)

        assert decision.allowed is True
        assert decision.remaining == 9
        assert decision.reset_at_ms == 65_000

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer secret-token"
        command = json.loads(request.content)
        assert command[:4] == ["EVAL", SLIDING_WINDOW_SCRIPT, "1", "relay:rl:chat:1.2.3.4"]
        assert command[5:7] == ["60000", "10"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_reply_degrades_to_memory(self):
        respx.post(UPSTASH_URL).mock(
            return_value=httpx.Response(200, json={"error": "ERR wrong number of arguments"})
        )
        async with httpx.AsyncClient() as client:
            limiter = UpstashRateLimiter(
                rest_url=UPSTASH_URL, token="t", http_client=client, fail_closed=False
            )
            decision = await limiter.admit("k", 1, 60)
            assert decision.allowed is True
            assert (await limiter.admit("k", 1, 60)).allowed is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_fail_closed(self):
        respx.post(UPSTASH_URL).mock(side_effect=httpx.ConnectError("unreachable"))
        async with httpx.AsyncClient() as client:
            limiter = UpstashRateLimiter(
                rest_url=UPSTASH_URL, token="t", http_client=client, fail_closed=True
            )
            decision = await limiter.admit("k", 10, 60)

        assert decision.allowed is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_ping(self):
        respx.get(f"{UPSTASH_URL}/ping").mock(return_value=httpx.Response(200, json={"result": "PONG"}))
        async with httpx.AsyncClient() as client:
            limiter = UpstashRateLimiter(rest_url=UPSTASH_URL, token="t", http_client=client)
            assert await limiter.ping() is True

    @pytest.mark.asyncio
    async def test_close_keeps_borrowed_client_open(self):
        async with httpx.AsyncClient() as client:
            limiter = UpstashRateLimiter(rest_url=UPSTASH_URL, token="t", http_client=client)
            await limiter.close()
            assert client.is_closed is False


class TestPeriodicCleanup:
    """Background sweep of expired in-memory windows."""

    @pytest.mark.asyncio
    async def test_sweeps_until_cancelled(self):
        limiter = Mock()
        limiter.cleanup = AsyncMock()

        task = asyncio.create_task(run_periodic_cleanup(limiter, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.cleanup.await_count >= 1

    @pytest.mark.asyncio
    async def test_failed_sweep_does_not_stop_loop(self):
        limiter = Mock()
        limiter.cleanup = AsyncMock(side_effect=RuntimeError("sweep failed"))

        task = asyncio.create_task(run_periodic_cleanup(limiter, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert limiter.cleanup.await_count >= 2

    @pytest.mark.asyncio
    async def test_sweep_drops_expired_windows(self):
        backend = InMemoryRateLimiter()
        limiter = RateLimiter(backend)
        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000):
            await limiter.admit("1.2.3.4", "chat", 5, 1)

        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=5_000):
            task = asyncio.create_task(run_periodic_cleanup(limiter, 0.01))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_durable_backend_sweeps_fallback_counter(self):
        client = Mock()
        client.eval = AsyncMock(side_effect=redis.ConnectionError("refused"))
        backend = RedisRateLimiter(redis_client=client, fail_closed=False)

        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=1_000):
            await backend.admit("k", 5, 1)
        assert len(backend._fallback) == 1

        with patch("relay.app.middleware.rate_limit.backends.now_ms", return_value=5_000):
            await backend.cleanup()

        assert len(backend._fallback) == 0
