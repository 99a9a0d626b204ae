"""Services package for the relay."""

from relay.app.services.sse import SSEDecoder, extract_delta, transcode

__all__ = [
    "SSEDecoder",
    "extract_delta",
    "transcode",
]
