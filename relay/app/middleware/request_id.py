"""Request ID middleware for log correlation.

Implemented as plain ASGI middleware so streaming responses pass through
without being buffered.
"""

import uuid

from fastapi import Request
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send


class RequestIdMiddleware:
    """Attach a request ID to every request and response.

    The request ID is:
    1. Taken from the X-Request-ID header if present
    2. Generated as UUID if not present
    3. Stored in ``request.state.request_id`` for endpoints and handlers
    4. Returned in the X-Request-ID response header
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        self.app = app
        self.header_name = header_name

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get(self.header_name) or str(uuid.uuid4())
        # Starlette exposes scope["state"] as request.state
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[self.header_name] = request_id
            await send(message)

        await self.app(scope, receive, send_with_request_id)


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")
