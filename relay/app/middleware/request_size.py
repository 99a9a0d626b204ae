"""Request body size limit middleware.

Rejects oversized request bodies with 413 before the endpoint buffers
them. Enforced for both Content-Length and chunked transfer encoding.
"""

import json

from starlette.types import ASGIApp, Message, Receive, Scope, Send


class SizeLimitedStream:
    """A receive wrapper that counts body bytes as they are read."""

    class SizeExceededError(Exception):
        """Raised when request body exceeds size limit."""

    def __init__(self, receive: Receive, max_size: int):
        self._receive = receive
        self._max_size = max_size
        self._bytes_read = 0

    async def receive(self) -> Message:
        """Receive and enforce size limit.

        Raises:
            SizeExceededError: If body size exceeds max_size
        """
        message = await self._receive()

        if message["type"] == "http.request":
            self._bytes_read += len(message.get("body", b""))
            if self._bytes_read > self._max_size:
                raise self.SizeExceededError(
                    f"Request body too large. Maximum allowed: {self._max_size} bytes"
                )

        return message


class RequestSizeLimitMiddleware:
    """ASGI middleware to limit request body size.

    Returns HTTP 413 (Payload Too Large) with ``{"error": ...}`` if the
    limit is exceeded.

    Usage:
        app.add_middleware(RequestSizeLimitMiddleware, max_body_size=64 * 1024)
    """

    def __init__(self, app: ASGIApp, max_body_size: int = 64 * 1024):
        self.app = app
        self.max_body_size = max_body_size

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Fast path: reject on the declared length without reading the body
        for name, value in scope.get("headers", []):
            if name.lower() == b"content-length":
                try:
                    declared = int(value.decode())
                except ValueError:
                    # Invalid Content-Length, the stream check still applies
                    break
                if declared > self.max_body_size:
                    await self._send_413_response(send)
                    return
                break

        size_limited_receive = SizeLimitedStream(receive, self.max_body_size).receive

        try:
            await self.app(scope, size_limited_receive, send)
        except SizeLimitedStream.SizeExceededError as exc:
            await self._send_413_response(send, detail=str(exc))

    async def _send_413_response(self, send: Send, detail: str | None = None) -> None:
        if detail is None:
            detail = f"Request body too large. Maximum allowed: {self.max_body_size} bytes"

        body = json.dumps({"error": detail}).encode()
        await send(
            {
                "type": "http.response.start",
                "status": 413,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
