"""Unit tests for engine dispatch and client construction."""

import os
from unittest.mock import AsyncMock, patch

import pytest

from websearch.tools.engine import SearchEngine, create_search_client
from websearch.utils.config import Settings
from websearch.utils.models import SearchMeta, SearchResponse

pytestmark = pytest.mark.unit


def canned_response(query: str) -> SearchResponse:
    return SearchResponse(
        results=[],
        meta=SearchMeta(query=query, top_k=10, time_range="any", cost_estimate=0.0),
    )


class TestCreateSearchClient:
    """Factory wiring from Settings."""

    def test_builds_from_settings(self) -> None:
        with patch.dict(
            os.environ,
            {
                "PERPLEXITY_API_KEY": "pplx-env",
                "WEB_SEARCH_CACHE_TTL": "5",
                "WEB_SEARCH_RATE_LIMIT": "9",
                "WEB_SEARCH_RATE_WINDOW_MS": "2000",
                "WEB_SEARCH_TIMEOUT_MS": "3000",
                "WEB_SEARCH_MAX_RETRIES": "1",
            },
            clear=True,
        ):
            client = create_search_client(Settings(_env_file=None))

        assert client.api_key == "pplx-env"
        assert client.cache.default_ttl_ms == 5 * 60 * 1000
        assert client.rate_limiter.limit == 9
        assert client.rate_limiter.window_ms == 2000
        assert client.timeout_ms == 3000
        assert client.max_retries == 1
        assert client.base_url == "https://api.perplexity.ai"

    def test_each_client_owns_its_state(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)
        first = create_search_client(settings)
        second = create_search_client(settings)

        assert first.cache is not second.cache
        assert first.rate_limiter is not second.rate_limiter

    def test_defaults_to_get_settings(self, mocker) -> None:
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None, perplexity_api_key="pplx-from-factory")
        mocker.patch("websearch.tools.engine.get_settings", return_value=settings)

        assert create_search_client().api_key == "pplx-from-factory"


class TestSearchEngine:
    """Routing between raw search and Sonar answers."""

    @pytest.fixture
    def engine(self, search_client) -> SearchEngine:
        engine = SearchEngine(search_client)
        engine.client.search = AsyncMock(return_value=canned_response("search"))
        engine.escalator.generate_answer = AsyncMock(return_value=canned_response("sonar"))
        return engine

    @pytest.mark.asyncio
    async def test_raw_search_by_default(self, engine: SearchEngine) -> None:
        response = await engine.run({"q": "rust"})

        assert response.meta.query == "search"
        engine.client.search.assert_awaited_once()
        engine.escalator.generate_answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sonar_answer_with_model(self, engine: SearchEngine) -> None:
        response = await engine.run(
            {"q": "rust", "engine": "sonar_answer", "sonar_model": "sonar-reasoning"}
        )

        assert response.meta.query == "sonar"
        engine.escalator.generate_answer.assert_awaited_once()
        engine.client.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sonar_without_model_falls_back_to_search(self, engine: SearchEngine) -> None:
        response = await engine.run({"q": "rust", "engine": "sonar_answer"})

        assert response.meta.query == "search"
        engine.escalator.generate_answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_model_without_sonar_engine_is_raw_search(self, engine: SearchEngine) -> None:
        await engine.run({"q": "rust", "engine": "raw_search", "sonar_model": "sonar"})

        engine.client.search.assert_awaited_once()
        engine.escalator.generate_answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_context_manager_closes_cache(self, search_client) -> None:
        search_client.cache.start_sweeper()
        assert search_client.cache._sweeper is not None

        async with SearchEngine(search_client) as engine:
            assert engine.client is search_client

        assert search_client.cache._sweeper is None

    def test_from_settings(self) -> None:
        with patch.dict(os.environ, {"PERPLEXITY_API_KEY": "pplx-x"}, clear=True):
            engine = SearchEngine.from_settings(Settings(_env_file=None))

        assert engine.client.api_key == "pplx-x"
        assert engine.escalator.search_client is engine.client
