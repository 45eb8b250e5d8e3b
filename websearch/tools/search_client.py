"""Perplexity search client with rate limiting, caching and SSRF guards."""

import time
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import ValidationError

from websearch.tools.cache import SearchCache, make_cache_key
from websearch.tools.rate_limiter import RateLimiter
from websearch.tools.resilience import handle_api_error, with_retry, with_timeout
from websearch.tools.security import (
    MAX_REDIRECTS,
    MAX_RESPONSE_SIZE,
    is_content_type_allowed,
    is_response_size_acceptable,
    is_valid_url,
    sanitize_url,
)
from websearch.utils.config import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY_MS,
    DEFAULT_TIMEOUT_MS,
)
from websearch.utils.exceptions import ConfigurationError, WebSearchError, WebSearchErrorCode
from websearch.utils.models import (
    DedupeStrategy,
    SearchMeta,
    SearchParams,
    SearchResponse,
    SearchResult,
)

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.perplexity.ai"
COST_PER_RESULT = 0.0001


def parse_params(params: SearchParams | Mapping[str, Any]) -> SearchParams:
    """Validate raw parameters, surfacing failures as INVALID_PARAMETERS."""
    if isinstance(params, SearchParams):
        return params
    try:
        return SearchParams.model_validate(params)
    except ValidationError as e:
        raise WebSearchError(
            WebSearchErrorCode.INVALID_PARAMETERS,
            "Invalid search parameters",
            "Check your search parameters and try again",
            details=e.errors(include_url=False),
        ) from e


def build_search_payload(params: SearchParams) -> dict[str, Any]:
    """Build the upstream request body, applying provider defaults."""
    payload: dict[str, Any] = {
        "query": params.build_query(),
        "top_k": params.effective_top_k,
        "time_range": params.effective_time_range,
        "safe_mode": params.safe_mode is not False,
        "include_snippets": params.include_snippets is not False,
    }

    optional = {
        "site": params.site,
        "lang": params.lang,
        "region": params.region,
        "from": params.from_,
        "to": params.to,
    }
    payload.update({key: value for key, value in optional.items() if value})

    if params.exclude_sites:
        payload["exclude_sites"] = params.exclude_sites
    if params.dedupe:
        payload["dedupe"] = params.dedupe
    if params.aggregate is not None:
        payload["aggregate"] = params.aggregate

    return payload


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


def normalize_result(item: Any) -> SearchResult | None:
    """Coerce one raw upstream hit, or None if it must be dropped."""
    if not isinstance(item, Mapping):
        return None

    title = item.get("title") or ""
    raw_url = item.get("url") or ""
    if not isinstance(title, str) or not isinstance(raw_url, str):
        return None

    url = sanitize_url(raw_url) if raw_url else ""
    if not title or not url or not is_valid_url(url):
        return None

    return SearchResult(
        title=title,
        url=url,
        snippet=str(item.get("snippet") or ""),
        published_at=_optional_str(item.get("published_at") or item.get("date")),
        source=_optional_str(item.get("source")),
        score=_optional_float(item.get("score")),
    )


def normalize_results(raw_results: Iterable[Any]) -> list[SearchResult]:
    """Normalize raw hits, dropping any without a title or a safe URL."""
    normalized = []
    for item in raw_results:
        result = normalize_result(item)
        if result is not None:
            normalized.append(result)
    return normalized


def _domain_key(url: str) -> str:
    try:
        return urlsplit(url).hostname or url
    except ValueError:
        return url


def deduplicate_results(
    results: list[SearchResult], strategy: DedupeStrategy | None
) -> list[SearchResult]:
    """Drop later duplicates by domain or exact title, keeping first-seen order."""
    if strategy in (None, "none"):
        return list(results)

    seen: set[str] = set()
    unique: list[SearchResult] = []
    for result in results:
        key = _domain_key(result.url) if strategy == "domain" else result.title
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def calculate_cost(result_count: int) -> float:
    return result_count * COST_PER_RESULT


class SearchClient:
    """
    Client for the Perplexity search API.

    Shared state (cache, rate limiter) is injected so each instance, and each
    test, can own its own.
    """

    SEARCH_PATH = "/search"

    def __init__(
        self,
        api_key: str | None,
        cache: SearchCache,
        rate_limiter: RateLimiter,
        base_url: str = DEFAULT_BASE_URL,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_response_size: int = MAX_RESPONSE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS,
    ) -> None:
        self.api_key = api_key
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip("/")
        self.timeout_ms = timeout_ms
        self.max_response_size = max_response_size
        self.max_retries = max_retries
        self.retry_base_delay_ms = retry_base_delay_ms

    @property
    def name(self) -> str:
        return "perplexity"

    async def search(self, params: SearchParams | Mapping[str, Any]) -> SearchResponse:
        """
        Search the web.

        1. Refuse immediately if the rate limit is reached
        2. Serve from cache when possible (never counted against the limit)
        3. Call the API with retry and timeout, then normalize and dedupe
        4. Cache the response and record the call

        Raises:
            WebSearchError: on validation, rate limit, security or API failure
        """
        search_params = parse_params(params)

        if not self.rate_limiter.check_limit():
            raise WebSearchError(
                WebSearchErrorCode.RATE_LIMIT_EXCEEDED,
                "Rate limit exceeded. Please try again later.",
                f"Retry in {self.rate_limiter.get_time_to_wait()}ms",
                details=self.rate_limiter.get_status(),
            )

        cache_key = make_cache_key(search_params)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info("Returning cached result for web search", query=search_params.q)
            return cached.as_cache_hit()

        payload = build_search_payload(search_params)

        start = time.perf_counter()
        data = await self.post_json(self.SEARCH_PATH, payload)
        response_time = int((time.perf_counter() - start) * 1000)

        raw_results = data.get("results")
        if not isinstance(raw_results, list):
            raise WebSearchError(
                WebSearchErrorCode.INVALID_RESPONSE,
                "Search response is missing a results list",
                "The API returned an unexpected payload",
                details=sorted(data.keys()),
            )

        normalized = normalize_results(raw_results)
        final_results = deduplicate_results(normalized, search_params.dedupe)
        dropped = len(raw_results) - len(final_results)
        if dropped:
            logger.info(
                "Filtered search results",
                raw=len(raw_results),
                kept=len(final_results),
                removed=dropped,
            )

        response = SearchResponse(
            results=final_results,
            meta=SearchMeta(
                query=search_params.q,
                top_k=search_params.effective_top_k,
                time_range=search_params.effective_time_range,
                cost_estimate=calculate_cost(len(normalized)),
                cache_hit=False,
                response_time=response_time,
            ),
        )

        # Stored copy is private to the cache; hits hand out further copies
        self.cache.set(cache_key, response.model_copy(deep=True))
        self.rate_limiter.increment()

        logger.info(
            "Web search completed",
            query=search_params.q,
            count=len(final_results),
            response_time=response_time,
        )
        return response

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError(
                "PERPLEXITY_API_KEY is not configured",
                "Set PERPLEXITY_API_KEY in the environment or .env file",
            )
        return self.api_key

    async def post_json(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a JSON body to the provider through the guarded retry path.

        The endpoint must pass is_valid_url before any transport activity.
        Every attempt is bounded by timeout_ms; failures are classified with
        handle_api_error once retries are exhausted.
        """
        url = f"{self.base_url}{path}"
        if not is_valid_url(url):
            raise WebSearchError(
                WebSearchErrorCode.SECURITY_ERROR,
                "Refusing to call an unsafe endpoint",
                "The API base URL must be a public https address",
                details=url,
            )

        headers = {
            "Authorization": f"Bearer {self._require_api_key()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            return await with_retry(
                lambda: with_timeout(lambda: self._send(url, payload, headers), self.timeout_ms),
                max_retries=self.max_retries,
                base_delay_ms=self.retry_base_delay_ms,
            )
        except Exception as e:
            classified = handle_api_error(e)
            logger.error(
                "Error making Perplexity API request",
                url=url,
                code=classified.code.value,
                error=classified.message,
            )
            if classified is e:
                raise
            raise classified from e

    async def _send(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> Any:
        async with httpx.AsyncClient(
            timeout=self.timeout_ms / 1000, max_redirects=MAX_REDIRECTS
        ) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        return self._parse_body(response)

    def _parse_body(self, response: httpx.Response) -> dict[str, Any]:
        """Apply response guards and decode the JSON body."""
        content_type = response.headers.get("content-type")
        if not is_content_type_allowed(content_type):
            raise WebSearchError(
                WebSearchErrorCode.SECURITY_ERROR,
                f"Disallowed response content type: {content_type}",
                details=content_type,
            )

        size = len(response.content)
        if not is_response_size_acceptable(size, self.max_response_size):
            raise WebSearchError(
                WebSearchErrorCode.SECURITY_ERROR,
                f"Response body too large: {size} bytes",
                f"Responses are capped at {self.max_response_size} bytes",
                details=size,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise WebSearchError(
                WebSearchErrorCode.INVALID_RESPONSE,
                "API returned a non-JSON body",
                details=str(e),
            ) from e

        if not isinstance(data, dict):
            raise WebSearchError(
                WebSearchErrorCode.INVALID_RESPONSE,
                "API returned an unexpected JSON document",
                details=type(data).__name__,
            )
        return data
