"""Unit tests for Sonar answer escalation."""

import pytest

from websearch.tools.answer_escalator import (
    AnswerEscalator,
    calculate_sonar_cost,
    normalize_answer,
)
from websearch.utils.exceptions import WebSearchError, WebSearchErrorCode

pytestmark = pytest.mark.unit

EVIDENCE = {
    "results": [
        {"title": "Rust Book", "url": "https://doc.rust-lang.org/book/"},
        {"title": "Rust by Example", "url": "https://doc.rust-lang.org/rust-by-example/"},
    ]
}


class TestNormalizeAnswer:
    """Mapping heterogeneous answer payloads onto one shape."""

    def test_chat_completion_shape(self) -> None:
        normalized = normalize_answer(
            {
                "choices": [{"message": {"role": "assistant", "content": "Ownership is..."}}],
                "citations": ["https://doc.rust-lang.org/book/"],
                "highlights": ["borrowing", 3, None],
                "clusters": [{"label": "memory"}],
            }
        )
        assert normalized["answer"] == "Ownership is..."
        assert normalized["highlights"] == ["borrowing"]
        assert normalized["clusters"] == [{"label": "memory"}]
        [citation] = normalized["citations"]
        assert citation.url == "https://doc.rust-lang.org/book/"
        assert citation.title == "https://doc.rust-lang.org/book/"

    def test_flat_answer_shape(self) -> None:
        normalized = normalize_answer(
            {
                "answer": "Flat answer",
                "citations": [
                    {"title": "Cited", "url": "https://cited.example/"},
                    {"title": "Private", "url": "https://192.168.0.1/"},
                    "http://insecure.example/",
                ],
            }
        )
        assert normalized["answer"] == "Flat answer"
        assert [c.url for c in normalized["citations"]] == ["https://cited.example/"]

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ({"choices": ["plain string"]}, "plain string"),
            ({"choices": [{"text": "completion text"}]}, "completion text"),
            ({"choices": [{"message": {}}]}, ""),
            ({"choices": []}, ""),
            ({}, ""),
        ],
    )
    def test_answer_extraction(self, raw, expected: str) -> None:
        assert normalize_answer(raw)["answer"] == expected

    def test_non_mapping(self) -> None:
        assert normalize_answer(["nope"]) == {
            "answer": "",
            "clusters": [],
            "highlights": [],
            "citations": [],
        }


class TestSonarCost:
    def test_per_model_base_cost(self) -> None:
        assert calculate_sonar_cost("sonar", 0) == pytest.approx(0.01)
        assert calculate_sonar_cost("sonar-deep-research", 0) == pytest.approx(0.05)

    def test_evidence_surcharge(self) -> None:
        assert calculate_sonar_cost("sonar-pro", 2) == pytest.approx(0.022)

    def test_unknown_model_uses_sonar_base(self) -> None:
        assert calculate_sonar_cost("other", 1) == pytest.approx(0.011)


class TestAnswerEscalator:
    """Tests for generate_answer."""

    @pytest.mark.asyncio
    async def test_requires_sonar_model(self, search_client, mock_httpx_client) -> None:
        escalator = AnswerEscalator(search_client)

        with pytest.raises(WebSearchError) as exc_info:
            await escalator.generate_answer({"q": "rust ownership", "engine": "sonar_answer"})

        assert exc_info.value.code == WebSearchErrorCode.INVALID_PARAMETERS
        mock_httpx_client.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_generates_answer(
        self, search_client, mock_httpx_client, response_factory
    ) -> None:
        mock_httpx_client.post.side_effect = [
            response_factory(EVIDENCE),
            response_factory(
                {
                    "choices": [{"message": {"content": "Ownership governs memory."}}],
                    "citations": [{"title": "Rust Book", "url": "https://doc.rust-lang.org/book/"}],
                    "highlights": ["single owner"],
                },
                path="/chat/completions",
            ),
        ]
        escalator = AnswerEscalator(search_client)

        response = await escalator.generate_answer(
            {"q": "rust ownership", "engine": "sonar_answer", "sonar_model": "sonar-pro"}
        )

        assert response.answer == "Ownership governs memory."
        assert len(response.results) == 2
        assert [c.title for c in response.citations] == ["Rust Book"]
        assert response.highlights == ["single owner"]
        assert response.clusters == []
        assert response.meta.cost_estimate == pytest.approx(0.022)
        assert response.meta.cache_hit is False

        answer_call = mock_httpx_client.post.call_args_list[1]
        assert answer_call.args[0] == "https://api.perplexity.ai/chat/completions"
        payload = answer_call.kwargs["json"]
        assert payload["model"] == "sonar-pro"
        assert payload["query"] == "rust ownership"
        assert payload["search_domain"] == "scholarly"
        assert payload["citations"] == "markdown"
        assert [item["url"] for item in payload["evidence"]] == [
            "https://doc.rust-lang.org/book/",
            "https://doc.rust-lang.org/rust-by-example/",
        ]

    @pytest.mark.asyncio
    async def test_citations_fall_back_to_evidence(
        self, search_client, mock_httpx_client, response_factory
    ) -> None:
        mock_httpx_client.post.side_effect = [
            response_factory(EVIDENCE),
            response_factory({"answer": "Short answer"}, path="/chat/completions"),
        ]

        response = await AnswerEscalator(search_client).generate_answer(
            {"q": "rust", "sonar_model": "sonar"}
        )

        assert response.answer == "Short answer"
        assert response.citations == response.results
        assert response.highlights == []

    @pytest.mark.asyncio
    async def test_empty_answer_is_none(
        self, search_client, mock_httpx_client, response_factory
    ) -> None:
        mock_httpx_client.post.side_effect = [
            response_factory(EVIDENCE),
            response_factory({"choices": []}, path="/chat/completions"),
        ]

        response = await AnswerEscalator(search_client).generate_answer(
            {"q": "rust", "sonar_model": "sonar"}
        )

        assert response.answer is None

    @pytest.mark.asyncio
    async def test_response_time_sums_both_calls(
        self, search_client, mock_httpx_client, response_factory, mocker
    ) -> None:
        mock_httpx_client.post.side_effect = [
            response_factory(EVIDENCE),
            response_factory({"answer": "A"}, path="/chat/completions"),
        ]
        # search start/end, then answer start/end
        mocker.patch("time.perf_counter", side_effect=[10.0, 10.125, 20.0, 20.375])

        response = await AnswerEscalator(search_client).generate_answer(
            {"q": "rust", "sonar_model": "sonar"}
        )

        assert response.meta.response_time == 500

    @pytest.mark.asyncio
    async def test_escalation_call_not_rate_counted(
        self, search_client, mock_httpx_client, response_factory
    ) -> None:
        mock_httpx_client.post.side_effect = [
            response_factory(EVIDENCE),
            response_factory({"answer": "A"}, path="/chat/completions"),
        ]

        await AnswerEscalator(search_client).generate_answer({"q": "rust", "sonar_model": "sonar"})

        assert search_client.rate_limiter.get_status()["current"] == 1

    @pytest.mark.asyncio
    async def test_answer_failure_propagates(
        self, search_client, mock_httpx_client, response_factory
    ) -> None:
        failure = response_factory({}, status_code=401, path="/chat/completions")
        mock_httpx_client.post.side_effect = [response_factory(EVIDENCE), failure, failure, failure]

        with pytest.raises(WebSearchError) as exc_info:
            await AnswerEscalator(search_client).generate_answer(
                {"q": "rust", "sonar_model": "sonar"}
            )

        assert exc_info.value.code == WebSearchErrorCode.API_ERROR
        assert exc_info.value.message == "API authentication failed"
