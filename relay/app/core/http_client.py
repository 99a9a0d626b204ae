"""Shared HTTP client management for connection pooling.

One ``httpx.AsyncClient`` is created in the application lifespan and reused
by the upstream provider and the Upstash rate-limit backend.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx

from relay.app.core.config import settings


_shared_http_client: httpx.AsyncClient | None = None


def build_timeout() -> httpx.Timeout:
    # read applies between stream chunks, so it bounds upstream stalls
    return httpx.Timeout(
        connect=settings.httpx_connect_timeout,
        read=settings.httpx_read_timeout,
        write=settings.httpx_write_timeout,
        pool=settings.httpx_pool_timeout,
    )


def build_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.httpx_max_connections,
        max_keepalive_connections=settings.httpx_max_keepalive_connections,
        keepalive_expiry=settings.httpx_keepalive_expiry,
    )


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client instance.

    Raises:
        RuntimeError: If the HTTP client has not been initialized.
    """
    if _shared_http_client is None:
        raise RuntimeError(
            "HTTP client not initialized. Ensure lifespan context is active."
        )
    return _shared_http_client


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield the shared HTTP client.

    Used in the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client():
                yield
    """
    global _shared_http_client

    _shared_http_client = httpx.AsyncClient(timeout=build_timeout(), limits=build_limits())

    try:
        yield _shared_http_client
    finally:
        if _shared_http_client is not None:
            await _shared_http_client.aclose()
            _shared_http_client = None


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    For callers that cannot use the shared client. The caller owns the
    returned client and must close it.

    Args:
        **kwargs: ``timeout`` overrides all granular timeouts; any other
            keyword is passed to ``httpx.AsyncClient``.
    """
    timeout_override = kwargs.pop("timeout", None)
    timeout = httpx.Timeout(timeout_override) if timeout_override is not None else build_timeout()
    return httpx.AsyncClient(timeout=timeout, limits=build_limits(), **kwargs)
