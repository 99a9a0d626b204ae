"""Streaming response handling for the chat relay."""

import asyncio
import time
from typing import AsyncGenerator, Dict, Optional

from fastapi.responses import StreamingResponse

from relay.app.core.logging import get_logger
from relay.app.providers.base import UpstreamResponse
from relay.app.services.sse import transcode

logger = get_logger(__name__)

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"


async def relay_stream(
    upstream: UpstreamResponse,
    request_id: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """Forward transcoded text chunks to the caller as they arrive.

    Headers are committed before the first chunk, so a failure here can
    only end the stream early; it is logged and the body stops.
    """
    chunks = transcode(upstream.body, request_id=request_id)
    started = time.monotonic()
    sent = 0
    outcome = "completed"

    try:
        async for text in chunks:
            sent += 1
            yield text
    except asyncio.CancelledError:
        outcome = "cancelled"
        raise
    except Exception as e:
        outcome = "failed"
        logger.error(
            f"Stream interrupted: {e!r}",
            exc_info=True,
            extra={"request_id": request_id, "model": upstream.model},
        )
    finally:
        await chunks.aclose()
        await upstream.aclose()
        logger.info(
            "Stream finished",
            extra={
                "request_id": request_id,
                "model": upstream.model,
                "outcome": outcome,
                "chunks": sent,
                "duration_ms": round((time.monotonic() - started) * 1000, 1),
            },
        )


def create_streaming_response(
    upstream: UpstreamResponse,
    request_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> StreamingResponse:
    """Wrap a successful upstream response in a chunked plain-text response."""
    response_headers = {
        "X-Content-Type-Options": "nosniff",
        "Cache-Control": "no-store",
    }
    response_headers.update(headers or {})
    return StreamingResponse(
        relay_stream(upstream, request_id=request_id),
        media_type=STREAM_MEDIA_TYPE,
        headers=response_headers,
    )
