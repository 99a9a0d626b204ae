import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # JSON is the documented format, but a bare host list should not crash
    # startup on a misconfigured deployment.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw or raw == "[]":
                return []
            if raw == "*":
                return ["*"]

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
        else:
            # Browsers send the scheme in Origin; allow both.
            origins.append(f"http://{part}")
            origins.append(f"https://{part}")

    return list(dict.fromkeys(origins))


def _parse_model_list(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(v).strip() for v in raw if str(v).strip()]
    raw = str(raw or "").strip()
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(v).strip() for v in parsed if str(v).strip()]
    return [p for p in re.split(r"[,\s]+", raw) if p]


DEFAULT_SYSTEM_PROMPT = (
    "You are the assistant embedded in a developer portfolio. "
    "Match the user's language, answer concisely and professionally, "
    "and format code with fenced Markdown blocks."
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - includes exception messages in 500 responses
    debug: bool = False
    app_version: str = "0.1.0"

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Upstream (OpenRouter, OpenAI-compatible chat completions)
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    # Primary model first; later entries are tried when the upstream answers 429
    openrouter_models: Annotated[list[str], NoDecode] = [
        "google/gemini-2.0-flash-exp:free",
        "z-ai/glm-4.5-air:free",
        "meta-llama/llama-3.3-70b-instruct:free",
    ]
    openrouter_fallback_delay_seconds: float = 2.0
    openrouter_referer: str = ""
    openrouter_title: str = ""

    # Generation parameters
    chat_temperature: float = 0.7
    chat_max_tokens: int = 8192
    chat_top_p: float = 0.95
    chat_max_message_length: int = 4000
    chat_max_history_messages: int = 20
    chat_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    # Input bounds; history beyond chat_max_history_messages is dropped before the upstream call
    chat_max_history_turns: int = 50
    chat_max_part_length: int = 16000
    request_max_body_bytes: int = 512 * 1024

    # Rate limiting settings (per scope)
    rate_limit_chat_limit: int = 10
    rate_limit_chat_window_seconds: int = 60
    rate_limit_contact_limit: int = 5
    rate_limit_contact_window_seconds: int = 3600
    rate_limit_telemetry_limit: int = 60
    rate_limit_telemetry_window_seconds: int = 60
    rate_limit_prefix: str = "relay:rl"
    rate_limit_max_entries: int = 10000
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the durable backend is unavailable
    )
    rate_limit_backend_timeout: float = 2.0  # Seconds per durable backend round trip
    rate_limit_cleanup_interval_seconds: float = 60.0  # In-memory expired-window sweep

    # Redis settings (optional durable rate-limit backend)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Upstash Redis REST settings (take priority over redis_url when set)
    upstash_redis_rest_url: str = ""
    upstash_redis_rest_token: str = ""

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 10.0  # Time to establish connection
    httpx_read_timeout: float = 60.0  # Time between upstream stream reads
    httpx_write_timeout: float = 10.0  # Time to send request data
    httpx_pool_timeout: float = 5.0  # Time to acquire connection from pool
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("openrouter_models", mode="before")
    @classmethod
    def decode_openrouter_models(cls, v: Any) -> list[str]:
        models = _parse_model_list(v)
        if not models:
            raise ValueError("openrouter_models must contain at least one model")
        return models

    @field_validator(
        "rate_limit_chat_limit",
        "rate_limit_chat_window_seconds",
        "rate_limit_contact_limit",
        "rate_limit_contact_window_seconds",
        "rate_limit_telemetry_limit",
        "rate_limit_telemetry_window_seconds",
        "rate_limit_max_entries",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "chat_max_message_length",
        "chat_max_tokens",
        "chat_max_history_messages",
        "chat_max_history_turns",
        "chat_max_part_length",
        "request_max_body_bytes",
    )
    @classmethod
    def validate_chat_limits_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("chat limits must be at least 1")
        return v

    @field_validator(
        "httpx_connect_timeout",
        "httpx_read_timeout",
        "httpx_write_timeout",
        "httpx_pool_timeout",
        "rate_limit_backend_timeout",
        "rate_limit_cleanup_interval_seconds",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("openrouter_fallback_delay_seconds")
    @classmethod
    def validate_delay_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("openrouter_fallback_delay_seconds cannot be negative")
        return v

    def rate_limit_for(self, scope: str) -> tuple[int, int]:
        """Return ``(limit, window_seconds)`` configured for a scope.

        Raises:
            KeyError: If the scope has no configured limit
        """
        limits = {
            "chat": (self.rate_limit_chat_limit, self.rate_limit_chat_window_seconds),
            "contact": (self.rate_limit_contact_limit, self.rate_limit_contact_window_seconds),
            "telemetry": (
                self.rate_limit_telemetry_limit,
                self.rate_limit_telemetry_window_seconds,
            ),
        }
        return limits[scope]

    @property
    def upstash_configured(self) -> bool:
        return bool(self.upstash_redis_rest_url and self.upstash_redis_rest_token)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
