import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.app.api.chat import router as chat_router
from relay.app.api.health import router as health_router
from relay.app.core.config import settings
from relay.app.core.http_client import init_http_client
from relay.app.core.logging import get_logger, setup_logging
from relay.app.exceptions import RelayException, UpstreamError
from relay.app.middleware.rate_limit import create_rate_limiter, run_periodic_cleanup
from relay.app.middleware.request_size import RequestSizeLimitMiddleware
from relay.app.middleware.request_id import RequestIdMiddleware, get_request_id
from relay.app.providers.openrouter import OpenRouterProvider


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Opens the shared HTTP connection pool for the upstream provider and
        starts the rate limiter sweep on startup; stops both and closes the
        rate limiter backend on shutdown.
        """
        async with init_http_client() as http_client:
            app.state.chat_provider = OpenRouterProvider(http_client=http_client)
            cleanup_task = asyncio.create_task(
                run_periodic_cleanup(
                    app.state.rate_limiter, settings.rate_limit_cleanup_interval_seconds
                )
            )

            if not app.state.chat_provider.is_configured:
                logger.warning("OPENROUTER_API_KEY is not set; chat requests will fail with 500")

            logger.info(
                "Application startup complete",
                extra={
                    "rate_limit_backend": app.state.rate_limiter.backend.name,
                    "models": settings.openrouter_models,
                    "debug_mode": settings.debug,
                },
            )

            yield

            cleanup_task.cancel()
            try:
                await cleanup_task
            except asyncio.CancelledError:
                pass
            app.state.chat_provider = None

        await app.state.rate_limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Chat Relay",
        description="Streaming chat relay with per-caller rate limiting",
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Selected once per process; shared by every request
    app.state.rate_limiter = create_rate_limiter()
    app.state.chat_provider = None

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=600,
    )

    app.add_middleware(RequestSizeLimitMiddleware, max_body_size=settings.request_max_body_bytes)

    app.add_middleware(RequestIdMiddleware)

    app.include_router(chat_router)
    app.include_router(health_router)

    @app.exception_handler(RelayException)
    async def relay_exception_handler(request: Request, exc: RelayException) -> JSONResponse:
        """Map relay exceptions to their status code and ``{"error": ...}`` body."""
        request_id = get_request_id(request)
        # Upstream failures are logged with the provider error text at the call site
        if exc.status_code >= 500 and not isinstance(exc, UpstreamError):
            logger.error(
                f"{type(exc).__name__}: {getattr(exc, 'detail', exc.message)}",
                extra={"request_id": request_id, "status_code": exc.status_code},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers={**exc.headers, "X-Request-ID": request_id},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is only logged. Debug mode adds the exception message
        to the response body.
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content = {"error": "An unexpected error occurred"}
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__

        return JSONResponse(
            status_code=500,
            content=content,
            headers={"X-Request-ID": request_id},
        )

    return app


# Create the application instance
app = create_app()
