"""Custom exceptions for the web search client."""

from enum import StrEnum
from typing import Any


class WebSearchErrorCode(StrEnum):
    """Fixed set of failure classes surfaced to callers."""

    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    SECURITY_ERROR = "SECURITY_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    CACHE_ERROR = "CACHE_ERROR"


class WebSearchError(Exception):
    """Base exception for all web search errors.

    Attributes:
        code: Failure class from WebSearchErrorCode
        message: Human-readable error description
        hint: Optional remediation hint
        details: Optional extra context (raw error text, offending values)
    """

    def __init__(
        self,
        code: WebSearchErrorCode,
        message: str,
        hint: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the plain error shape returned by tool wrappers."""
        return {
            "code": self.code.value,
            "message": self.message,
            "hint": self.hint,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ConfigurationError(WebSearchError):
    """Raised when configuration is invalid or a credential is missing."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(WebSearchErrorCode.API_ERROR, message, hint)


def format_error(error: BaseException) -> str:
    """Format an error for user display."""
    if isinstance(error, WebSearchError):
        text = f"{error.code.value}: {error.message}"
        if error.hint:
            text += f" ({error.hint})"
        return text
    return f"Error: {error}"
