"""Chat relay endpoint.

One request moves through: rate limiting, validation, upstream dialing,
streaming. Quota is consumed before the body is validated, so malformed
requests count against the caller's chat limit.
"""

import json
import re
from typing import List, Literal

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from relay.app.api.chat_responses import create_streaming_response
from relay.app.core.config import settings
from relay.app.core.http_client import get_http_client
from relay.app.core.logging import get_logger
from relay.app.exceptions import InvalidRequestError, UpstreamError
from relay.app.middleware.rate_limit import (
    RateLimiter,
    enforce_rate_limit,
    get_rate_limiter,
    rate_limit_headers,
)
from relay.app.middleware.request_id import get_request_id
from relay.app.providers.base import BaseProvider
from relay.app.providers.openrouter import OpenRouterProvider

CHAT_SCOPE = "chat"
MESSAGE_REQUIRED = "Invalid request: 'message' field is required"

# NUL and C0 control characters except tab, newline and carriage return
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class TextPart(BaseModel):
    text: str = Field(..., max_length=settings.chat_max_part_length)


class HistoryTurn(BaseModel):
    """One prior turn of the conversation."""
    role: Literal["user", "model"]
    parts: List[TextPart] = Field(default_factory=list)


class ChatRequest(BaseModel):
    """Validated chat request."""
    message: str = Field(..., min_length=1)
    history: List[HistoryTurn] = Field(
        default_factory=list, max_length=settings.chat_max_history_turns
    )


def sanitize_message(message: str) -> str:
    return _CONTROL_CHARS.sub("", message).strip()


def message_length(message: str) -> int:
    """Length in UTF-16 code units, as browsers count it.

    Characters outside the Basic Multilingual Plane (most emoji) count as two.
    """
    return len(message.encode("utf-16-le")) // 2


def parse_chat_request(body: object) -> ChatRequest:
    """Validate a decoded JSON body.

    Raises:
        InvalidRequestError: If the message is missing, not a string, too
            long, or the history is malformed
    """
    if not isinstance(body, dict):
        raise InvalidRequestError(MESSAGE_REQUIRED)

    message = body.get("message")
    if not message or not isinstance(message, str):
        raise InvalidRequestError(MESSAGE_REQUIRED)

    max_length = settings.chat_max_message_length
    if message_length(message) > max_length:
        raise InvalidRequestError(f"Message too long. Maximum {max_length} characters.")

    message = sanitize_message(message)
    if not message:
        raise InvalidRequestError(MESSAGE_REQUIRED)

    try:
        return ChatRequest(message=message, history=body.get("history") or [])
    except ValidationError as e:
        raise InvalidRequestError(
            f"Invalid request: 'history' is malformed ({e.error_count()} errors)"
        ) from e


def get_chat_provider(request: Request) -> BaseProvider:
    """Get the upstream provider as a FastAPI dependency.

    Built on first use with the shared HTTP client when the lifespan has
    initialized one.
    """
    provider = getattr(request.app.state, "chat_provider", None)
    if provider is None:
        try:
            http_client = get_http_client()
        except RuntimeError:
            # HTTP client not initialized, the provider opens one per request
            http_client = None
        provider = OpenRouterProvider(http_client=http_client)
        request.app.state.chat_provider = provider
    return provider


router = APIRouter()
logger = get_logger(__name__)


@router.post("/chat", response_model=None)
@router.post("/api/chat", response_model=None, include_in_schema=False)
async def chat(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    provider: BaseProvider = Depends(get_chat_provider),
) -> StreamingResponse:
    """Relay a chat message to the upstream model and stream the reply.

    Returns:
        Chunked ``text/plain`` response with the assistant text

    Raises:
        RateLimitExceededError: 429 when the caller's chat quota is spent
        InvalidRequestError: 400 for a missing, oversized or malformed body
        UpstreamError: Upstream status when the provider call fails
        ServiceConfigurationError: 500 when no API key is configured
    """
    request_id = get_request_id(request)

    decision = await enforce_rate_limit(request, limiter, CHAT_SCOPE)

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Invalid JSON in request body")

    chat_request = parse_chat_request(body)
    history = [turn.model_dump() for turn in chat_request.history]

    upstream = await provider.stream_completion(
        chat_request.message, history, request_id=request_id
    )

    if not upstream.ok:
        error_text = await upstream.error_text()
        await upstream.aclose()
        logger.error(
            "Upstream request failed",
            extra={
                "request_id": request_id,
                "model": upstream.model,
                "upstream_status": upstream.status,
                "upstream_error": error_text,
            },
        )
        raise UpstreamError(upstream.status, detail=error_text)

    logger.info(
        "Streaming upstream reply",
        extra={
            "request_id": request_id,
            "model": upstream.model,
            "history_turns": len(history),
        },
    )
    return create_streaming_response(
        upstream,
        request_id=request_id,
        headers=rate_limit_headers(decision),
    )
