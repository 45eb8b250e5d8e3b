"""Application configuration using Pydantic Settings."""

import logging
from typing import Any, Literal

import structlog
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from websearch.utils.exceptions import ConfigurationError

DEFAULT_CACHE_TTL_MINUTES = 30
DEFAULT_RATE_LIMIT = 5
DEFAULT_RATE_WINDOW_MS = 1000
DEFAULT_RETRY_AFTER_MS = 1000
DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_MAX_RESPONSE_SIZE = 5 * 1024 * 1024
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY_MS = 1000


def positive_int_or_default(value: Any, default: int) -> int:
    """Coerce value to a positive int, falling back to default.

    Unset, non-numeric, zero and negative values all yield the default.
    Strings are parsed leniently, so "15ms" reads as 15.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int | float):
        number = int(value)
    else:
        text = str(value).strip()
        digits = ""
        for index, char in enumerate(text):
            if char.isdigit() or (index == 0 and char in "+-"):
                digits += char
            else:
                break
        try:
            number = int(digits)
        except ValueError:
            return default
    return number if number > 0 else default


class Settings(BaseSettings):
    """Strongly-typed web search settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Provider
    perplexity_api_key: str | None = Field(default=None, description="Perplexity API key")
    perplexity_base_url: str = Field(
        default="https://api.perplexity.ai", description="Provider API root"
    )

    # Cache / rate limiting
    web_search_cache_ttl: int = Field(
        default=DEFAULT_CACHE_TTL_MINUTES, description="Cache TTL in minutes"
    )
    web_search_rate_limit: int = Field(
        default=DEFAULT_RATE_LIMIT, description="Accepted requests per window"
    )
    web_search_rate_window_ms: int = Field(
        default=DEFAULT_RATE_WINDOW_MS, description="Rate limit window in milliseconds"
    )
    web_search_retry_after_ms: int = Field(
        default=DEFAULT_RETRY_AFTER_MS, description="Minimum wait once the limit is hit"
    )

    # Transport
    web_search_timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS, description="Per-attempt request timeout"
    )
    web_search_max_response_size: int = Field(
        default=DEFAULT_MAX_RESPONSE_SIZE, description="Maximum response body in bytes"
    )
    web_search_max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=10)
    web_search_retry_base_delay_ms: int = Field(default=DEFAULT_RETRY_BASE_DELAY_MS)

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator(
        "web_search_cache_ttl",
        "web_search_rate_limit",
        "web_search_rate_window_ms",
        "web_search_retry_after_ms",
        "web_search_timeout_ms",
        "web_search_max_response_size",
        "web_search_retry_base_delay_ms",
        mode="before",
    )
    @classmethod
    def _fallback_to_default(cls, value: Any, info: ValidationInfo) -> int:
        default = cls.model_fields[info.field_name].default
        return positive_int_or_default(value, default)

    @property
    def has_api_key(self) -> bool:
        """Check if the Perplexity API key is available."""
        return bool(self.perplexity_api_key)

    def require_api_key(self) -> str:
        """Get the Perplexity API key or fail."""
        if not self.perplexity_api_key:
            raise ConfigurationError(
                "PERPLEXITY_API_KEY is not configured",
                "Set PERPLEXITY_API_KEY in the environment or .env file",
            )
        return self.perplexity_api_key


def get_settings() -> Settings:
    """Factory function to get settings (allows mocking in tests)."""
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Configure structured logging with the configured log level."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(message)s",
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
