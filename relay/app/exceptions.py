"""Custom exceptions for the relay application."""


class RelayException(Exception):
    """Base class for relay exceptions with HTTP status code.

    Subclasses define their ``status_code`` so the exception handlers in
    ``create_app`` can map them to a JSON ``{"error": ...}`` response.
    """
    status_code: int = 500

    def __init__(self, message: str = "Relay error", headers: dict[str, str] | None = None):
        self.message = message
        self.headers = dict(headers or {})
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.message}


class InvalidRequestError(RelayException):
    """Raised when the chat request body is missing, malformed or oversized.

    Maps to HTTP 400 Bad Request. Never retried automatically.
    """
    status_code = 400


class RateLimitExceededError(RelayException):
    """Raised when a caller has exhausted the quota for a scope.

    Maps to HTTP 429 Too Many Requests with a ``Retry-After`` header.
    """
    status_code = 429

    def __init__(
        self,
        retry_after: int,
        message: str = "Too many requests. Please try again later.",
        headers: dict[str, str] | None = None,
    ):
        self.retry_after = max(0, retry_after)
        super().__init__(message, headers=headers)
        self.headers["Retry-After"] = str(self.retry_after)

    def to_response(self) -> dict:
        return {"error": self.message, "retryAfter": self.retry_after}


class UpstreamError(RelayException):
    """Raised when the language-model provider rejects or fails the call.

    The status code mirrors the upstream's. ``detail`` holds the provider
    error text for server-side logs only; it is never sent to the caller.
    """

    def __init__(self, status_code: int, detail: str = ""):
        # A non-error upstream status (e.g. an unfollowed redirect) is a bad gateway
        self.status_code = status_code if status_code >= 400 else 502
        self.detail = detail
        super().__init__("Upstream service error")


class ServiceConfigurationError(RelayException):
    """Raised when the relay is missing its upstream credential.

    Maps to HTTP 500.
    """
    status_code = 500

    def __init__(self, detail: str = "Upstream API key is not configured"):
        self.detail = detail
        super().__init__("Service configuration error")
