from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Mapping, Optional, Sequence

import httpx

from relay.app.core.http_client import create_http_client

# Status reported when the upstream could not be reached at all
TRANSPORT_FAILURE_STATUS = 503


async def _stream_body(
    response: httpx.Response,
    owned_client: Optional[httpx.AsyncClient] = None,
) -> AsyncGenerator[bytes, None]:
    """Yield the upstream body and release the connection on every exit."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()
        if owned_client is not None:
            await owned_client.aclose()


@dataclass
class UpstreamResponse:
    """Status and unread body of an upstream call.

    On success ``body`` is a lazy byte stream owned by whoever consumes it;
    on failure ``body`` is None and ``error_text()`` reads the diagnostic
    body once.
    """
    ok: bool
    status: int
    body: Optional[AsyncIterator[bytes]] = None
    model: Optional[str] = None
    _response: Optional[httpx.Response] = field(default=None, repr=False)
    _owned_client: Optional[httpx.AsyncClient] = field(default=None, repr=False)
    _error_text: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_httpx(
        cls,
        response: httpx.Response,
        model: Optional[str] = None,
        owned_client: Optional[httpx.AsyncClient] = None,
    ) -> "UpstreamResponse":
        ok = response.is_success
        return cls(
            ok=ok,
            status=response.status_code,
            body=_stream_body(response, owned_client) if ok else None,
            model=model,
            _response=response,
            _owned_client=owned_client,
        )

    @classmethod
    def transport_failure(cls, error_text: str, model: Optional[str] = None) -> "UpstreamResponse":
        return cls(
            ok=False,
            status=TRANSPORT_FAILURE_STATUS,
            model=model,
            _error_text=error_text,
        )

    async def error_text(self, limit: int = 500) -> str:
        """Read the upstream error body for logging. Never call on success."""
        if self._error_text is None:
            if self._response is None:
                self._error_text = ""
            else:
                try:
                    await self._response.aread()
                    self._error_text = self._response.text
                except httpx.HTTPError as e:
                    self._error_text = f"<unreadable upstream body: {e}>"
        return self._error_text[:limit]

    async def aclose(self) -> None:
        """Release the upstream connection. Safe to call more than once."""
        if self._response is not None:
            await self._response.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None


class BaseProvider(ABC):
    """Base class for language-model providers.

    Subclasses can accept an external httpx.AsyncClient for connection pooling,
    or create a client per request if none is provided.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the provider.

        Args:
            base_url: The API base URL
            api_key: The API key for authentication
            http_client: Optional shared HTTP client for connection pooling
        """
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.headers = self._build_headers()

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        return self._http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and len(self.api_key) > 10

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def _get_client(self) -> tuple[httpx.AsyncClient, bool]:
        """Return the client to use and whether the caller owns it."""
        if self._http_client is not None:
            return self._http_client, False
        # Fallback: a client per request, closed with its response
        return create_http_client(), True

    def _get_endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    @abstractmethod
    async def stream_completion(
        self,
        message: str,
        history: Sequence[Mapping[str, Any]] = (),
        request_id: Optional[str] = None,
    ) -> UpstreamResponse:
        """Open a streaming completion for ``message`` after ``history``.

        Returns once response headers arrive; the body is left unread.

        Raises:
            ServiceConfigurationError: If the provider has no credential
        """
