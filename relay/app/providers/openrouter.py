import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.exceptions import ServiceConfigurationError
from relay.app.providers.base import BaseProvider, UpstreamResponse

logger = get_logger(__name__)


def truncate_history(
    history: Sequence[Mapping[str, Any]],
    max_messages: int,
) -> List[Mapping[str, Any]]:
    """Keep the last ``max_messages`` turns.

    When truncation cuts the conversation so that it opens on a model
    turn, that orphaned reply is dropped as well.
    """
    if len(history) <= max_messages:
        return list(history)
    truncated = list(history[-max_messages:])
    if truncated and truncated[0].get("role") == "model" and len(truncated) > 1:
        return truncated[1:]
    return truncated


def turn_text(turn: Mapping[str, Any]) -> str:
    return "".join(str(part.get("text", "")) for part in turn.get("parts") or [])


def build_messages(
    message: str,
    history: Sequence[Mapping[str, Any]],
    system_prompt: str = "",
    max_history: int = 20,
) -> List[Dict[str, str]]:
    """Convert a user/model conversation to OpenAI chat messages."""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    for turn in truncate_history(history, max_history):
        role = "user" if turn.get("role") == "user" else "assistant"
        messages.append({"role": role, "content": turn_text(turn)})

    messages.append({"role": "user", "content": message})
    return messages


class OpenRouterProvider(BaseProvider):
    """OpenRouter chat completions provider (OpenAI-compatible SSE).

    Tries ``models`` in order: when the upstream answers 429 and another
    model remains, the next one is used after ``fallback_delay`` seconds.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        models: Optional[Sequence[str]] = None,
        fallback_delay: Optional[float] = None,
    ):
        super().__init__(
            base_url or settings.openrouter_base_url,
            settings.openrouter_api_key if api_key is None else api_key,
            http_client,
        )
        self.models = list(models or settings.openrouter_models)
        self.fallback_delay = (
            settings.openrouter_fallback_delay_seconds if fallback_delay is None else fallback_delay
        )

    def _build_headers(self) -> Dict[str, str]:
        headers = super()._build_headers()
        if settings.openrouter_referer:
            headers["HTTP-Referer"] = settings.openrouter_referer
        if settings.openrouter_title:
            headers["X-Title"] = settings.openrouter_title
        return headers

    def build_payload(self, model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": messages,
            "temperature": settings.chat_temperature,
            "max_tokens": settings.chat_max_tokens,
            "top_p": settings.chat_top_p,
            "stream": True,
        }

    async def stream_completion(
        self,
        message: str,
        history: Sequence[Mapping[str, Any]] = (),
        request_id: Optional[str] = None,
    ) -> UpstreamResponse:
        if not self.is_configured:
            raise ServiceConfigurationError("OpenRouter API key not configured")

        url = self._get_endpoint_url("/chat/completions")
        messages = build_messages(
            message,
            history,
            system_prompt=settings.chat_system_prompt,
            max_history=settings.chat_max_history_messages,
        )

        for index, model in enumerate(self.models):
            client, owned = self._get_client()
            request = client.build_request(
                "POST", url, headers=self.headers, json=self.build_payload(model, messages)
            )

            try:
                response = await client.send(request, stream=True)
            except httpx.TimeoutException as e:
                logger.error(
                    f"Upstream timeout: {e!r}",
                    extra={"request_id": request_id, "model": model},
                )
                if owned:
                    await client.aclose()
                return UpstreamResponse.transport_failure(f"timeout: {e!r}", model=model)
            except httpx.HTTPError as e:
                logger.error(
                    f"Upstream connection failed: {e!r}",
                    extra={"request_id": request_id, "model": model},
                )
                if owned:
                    await client.aclose()
                return UpstreamResponse.transport_failure(f"connection error: {e!r}", model=model)

            if response.status_code == 429 and index < len(self.models) - 1:
                await response.aclose()
                if owned:
                    await client.aclose()
                logger.warning(
                    f"Rate limit on {model}, trying next fallback model",
                    extra={"request_id": request_id, "model": model},
                )
                await asyncio.sleep(self.fallback_delay)
                continue

            logger.debug(
                "Upstream responded",
                extra={
                    "request_id": request_id,
                    "model": model,
                    "upstream_status": response.status_code,
                },
            )
            return UpstreamResponse.from_httpx(
                response, model=model, owned_client=client if owned else None
            )

        # Unreachable: the last model always returns above
        raise RuntimeError("no upstream models configured")
