"""Engine selection and client construction."""

from collections.abc import Mapping
from typing import Any

import structlog

from websearch.tools.answer_escalator import AnswerEscalator
from websearch.tools.cache import SearchCache
from websearch.tools.rate_limiter import RateLimiter
from websearch.tools.search_client import SearchClient, parse_params
from websearch.utils.config import Settings, get_settings
from websearch.utils.models import SearchParams, SearchResponse

logger = structlog.get_logger()


def create_search_client(settings: Settings | None = None) -> SearchClient:
    """
    Build a SearchClient with its own cache and rate limiter.

    Args:
        settings: Settings to use (defaults to get_settings())

    Returns:
        A client owning fresh, unshared state
    """
    settings = settings or get_settings()

    cache = SearchCache(default_ttl_minutes=settings.web_search_cache_ttl)
    rate_limiter = RateLimiter(
        limit=settings.web_search_rate_limit,
        window_ms=settings.web_search_rate_window_ms,
        retry_after_ms=settings.web_search_retry_after_ms,
    )

    return SearchClient(
        api_key=settings.perplexity_api_key,
        cache=cache,
        rate_limiter=rate_limiter,
        base_url=settings.perplexity_base_url,
        timeout_ms=settings.web_search_timeout_ms,
        max_response_size=settings.web_search_max_response_size,
        max_retries=settings.web_search_max_retries,
        retry_base_delay_ms=settings.web_search_retry_base_delay_ms,
    )


class SearchEngine:
    """Routes a request to raw search or Sonar answer generation."""

    def __init__(self, client: SearchClient) -> None:
        self.client = client
        self.escalator = AnswerEscalator(client)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SearchEngine":
        return cls(create_search_client(settings))

    async def run(self, params: SearchParams | Mapping[str, Any]) -> SearchResponse:
        """Execute the engine the parameters ask for.

        Sonar is only used when engine is "sonar_answer" and a sonar_model is
        given; everything else is a raw search.
        """
        search_params = parse_params(params)
        engine = search_params.engine or "raw_search"

        if engine == "sonar_answer" and search_params.sonar_model:
            result = await self.escalator.generate_answer(search_params)
        else:
            engine = "raw_search"
            result = await self.client.search(search_params)

        logger.info(
            "Advanced web search completed",
            query=search_params.q,
            engine=engine,
            result_count=len(result.results),
            response_time=result.meta.response_time,
        )
        return result

    async def close(self) -> None:
        await self.client.cache.close()

    async def __aenter__(self) -> "SearchEngine":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
