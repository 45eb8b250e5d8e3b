"""Error classification, retry with backoff, and timeouts for upstream calls."""

import asyncio
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from websearch.utils.exceptions import WebSearchError, WebSearchErrorCode

logger = structlog.get_logger()

T = TypeVar("T")

DNS_ERROR_CODES = frozenset({"ENOTFOUND", "EAI_AGAIN"})
TIMEOUT_ERROR_CODES = frozenset({"ETIMEDOUT", "ESOCKETTIMEDOUT"})
DNS_FAILURE_MESSAGES = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
)
UNAVAILABLE_STATUSES = frozenset({500, 502, 503, 504})

# Outcomes of timed-out operations we stopped waiting for. Holding a
# reference keeps the tasks alive until they finish on their own.
_abandoned_tasks: set[asyncio.Task[Any]] = set()


def _exception_chain(error: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = error
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def _error_code(error: Any) -> str | None:
    code = getattr(error, "code", None)
    return code if isinstance(code, str) else None


def _response_of(error: Any) -> Any:
    # httpx error properties raise RuntimeError when the attribute was never set
    try:
        return getattr(error, "response", None)
    except RuntimeError:
        return None


def _status_of(error: Any) -> int | None:
    response = _response_of(error)
    if response is None:
        return None
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(response, "status", None)
    return status if isinstance(status, int) else None


def _reason_of(error: Any) -> str:
    response = _response_of(error)
    for attribute in ("reason_phrase", "status_text", "statusText", "reason"):
        reason = getattr(response, attribute, None)
        if isinstance(reason, str):
            return reason
    return ""


def _message_of(error: Any) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error)


def _is_dns_failure(error: Any) -> bool:
    if _error_code(error) in DNS_ERROR_CODES:
        return True
    if isinstance(error, BaseException):
        chain = _exception_chain(error)
        if any(isinstance(exc, socket.gaierror) for exc in chain):
            return True
        if isinstance(error, httpx.ConnectError):
            message = str(error).lower()
            return any(marker in message for marker in DNS_FAILURE_MESSAGES)
    return False


def _is_timeout(error: Any) -> bool:
    if _error_code(error) in TIMEOUT_ERROR_CODES:
        return True
    return isinstance(error, httpx.TimeoutException | TimeoutError)


def _from_status(error: Any) -> WebSearchError:
    status = _status_of(error)
    if status == 400:
        return WebSearchError(
            WebSearchErrorCode.INVALID_PARAMETERS,
            "Invalid parameters sent to the API",
            "Check your search parameters and try again",
        )
    if status in (401, 403):
        return WebSearchError(
            WebSearchErrorCode.API_ERROR,
            "API authentication failed",
            "Check your API key and permissions",
        )
    if status == 429:
        return WebSearchError(
            WebSearchErrorCode.RATE_LIMIT_EXCEEDED,
            "Rate limit exceeded",
            "Too many requests. Please wait before trying again",
        )
    if status in UNAVAILABLE_STATUSES:
        return WebSearchError(
            WebSearchErrorCode.API_ERROR,
            "API service temporarily unavailable",
            "The service is currently unavailable. Please try again later",
        )
    return WebSearchError(
        WebSearchErrorCode.API_ERROR,
        f"API error: {status} {_reason_of(error)}".rstrip(),
        "An unexpected error occurred with the API",
    )


@dataclass(frozen=True)
class ClassificationRule:
    """One step of the ordered error classification chain."""

    name: str
    matches: Callable[[Any], bool]
    build: Callable[[Any], WebSearchError]


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "dns",
        _is_dns_failure,
        lambda _: WebSearchError(
            WebSearchErrorCode.NETWORK_ERROR,
            "Network error occurred while connecting to the API",
            "Check your internet connection and try again",
        ),
    ),
    ClassificationRule(
        "timeout",
        _is_timeout,
        lambda _: WebSearchError(
            WebSearchErrorCode.TIMEOUT_ERROR,
            "Request timed out while connecting to the API",
            "The API is taking too long to respond. Try again later",
        ),
    ),
    ClassificationRule("http_status", lambda e: _status_of(e) is not None, _from_status),
    ClassificationRule(
        "quota",
        lambda e: "quota" in _message_of(e),
        lambda _: WebSearchError(
            WebSearchErrorCode.QUOTA_EXCEEDED,
            "API quota exceeded",
            "Your API quota has been exceeded. Check your plan or try again later",
        ),
    ),
)


def handle_api_error(error: Any) -> WebSearchError:
    """
    Map a raw transport failure onto the WebSearchError taxonomy.

    Errors that are already classified pass through unchanged. Everything
    else goes through CLASSIFICATION_RULES in order; the first match wins.
    """
    if isinstance(error, WebSearchError):
        return error

    logger.error("API error occurred", error=str(error), error_type=type(error).__name__)

    for rule in CLASSIFICATION_RULES:
        if rule.matches(error):
            classified = rule.build(error)
            break
    else:
        classified = WebSearchError(
            WebSearchErrorCode.API_ERROR,
            _message_of(error) or "An unknown error occurred",
            "An unexpected error occurred. Please try again",
        )

    classified.details = str(error)
    return classified


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "Operation failed, retrying",
        error=str(error),
        attempt=retry_state.attempt_number,
        delay=retry_state.next_action.sleep if retry_state.next_action else None,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay_ms: int = 1000,
) -> T:
    """
    Run an operation, retrying failures with exponential backoff.

    Makes up to max_retries + 1 attempts, sleeping base_delay_ms * 2**attempt
    between them. Every error is retried alike; the last one is re-raised
    unchanged.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay_ms: Delay before the first retry, doubled each time
    """
    base_delay = base_delay_ms / 1000
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        before_sleep=_log_retry,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await operation()
    except Exception as e:
        logger.error(
            "Operation failed after all retries",
            error=str(e),
            max_retries=max_retries,
        )
        raise
    raise AssertionError("unreachable")  # pragma: no cover


def _discard_outcome(task: asyncio.Task[Any]) -> None:
    _abandoned_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Abandoned operation failed", error=str(error))
    else:
        logger.debug("Abandoned operation completed")


def _release(task: asyncio.Task[Any], cancel: bool) -> None:
    """Cancel a task we stopped waiting for, or keep it until it finishes."""
    if cancel:
        task.cancel()
        return
    _abandoned_tasks.add(task)
    task.add_done_callback(_discard_outcome)


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    timeout_ms: int,
    cancel_on_timeout: bool = False,
) -> T:
    """
    Race an operation against a timer.

    When the timer wins a TIMEOUT_ERROR is raised. By default the operation
    keeps running in the background and its eventual result is discarded;
    pass cancel_on_timeout=True to cancel it instead. The same applies when
    the caller itself is cancelled while waiting.
    """
    task = asyncio.ensure_future(operation())
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        _release(task, cancel_on_timeout)
        raise

    if task in done:
        return task.result()

    _release(task, cancel_on_timeout)
    raise WebSearchError(
        WebSearchErrorCode.TIMEOUT_ERROR,
        f"Operation timed out after {timeout_ms}ms",
        "Try again later or check your network connection",
    )
