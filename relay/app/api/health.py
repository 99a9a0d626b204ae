"""Health check endpoint."""

import platform
import time
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.middleware.rate_limit import InMemoryRateLimiter, RateLimiter

router = APIRouter()
logger = get_logger(__name__)

CheckStatus = Literal["pass", "warn", "fail"]

_STARTED = time.monotonic()


def _check(name: str, status: CheckStatus, message: str) -> dict[str, str]:
    return {"name": name, "status": status, "message": message}


def check_upstream() -> dict[str, str]:
    key = settings.openrouter_api_key
    if key and len(key) > 10:
        return _check("upstream", "pass", "API key configured")
    return _check("upstream", "warn", "API key missing, chat requests will fail")


async def check_rate_limiter(limiter: RateLimiter | None) -> dict[str, str]:
    if limiter is None:
        return _check("rate_limiter", "fail", "Rate limiter not initialized")
    if isinstance(limiter.backend, InMemoryRateLimiter):
        return _check("rate_limiter", "warn", "Using in-memory counter, limits are per instance")

    try:
        reachable = await limiter.ping()
    except Exception as e:
        logger.warning(f"Rate limiter ping raised: {e}")
        reachable = False

    if reachable:
        return _check("rate_limiter", "pass", f"{limiter.backend.name} backend reachable")
    return _check("rate_limiter", "fail", f"{limiter.backend.name} backend unreachable")


def overall_status(checks: list[dict[str, str]]) -> str:
    statuses = {check["status"] for check in checks}
    if "fail" in statuses:
        return "unhealthy"
    if "warn" in statuses:
        return "degraded"
    return "healthy"


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    """Report runtime, upstream credential and rate limiter status.

    Answers 503 when any check fails so load balancers stop routing here.
    """
    checks = [
        _check("runtime", "pass", f"Python {platform.python_version()}"),
        check_upstream(),
        await check_rate_limiter(getattr(request.app.state, "rate_limiter", None)),
    ]
    status = overall_status(checks)
    body: dict[str, Any] = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
        "uptime_ms": int((time.monotonic() - _STARTED) * 1000),
        "checks": checks,
    }
    return JSONResponse(
        status_code=503 if status == "unhealthy" else 200,
        content=body,
        headers={"Cache-Control": "no-store, max-age=0"},
    )
