"""Sonar answer generation grounded on a web search evidence base."""

import time
from collections.abc import Mapping
from typing import Any

import structlog

from websearch.tools.search_client import SearchClient, normalize_result, parse_params
from websearch.utils.exceptions import WebSearchError, WebSearchErrorCode
from websearch.utils.models import SearchMeta, SearchParams, SearchResponse, SearchResult

logger = structlog.get_logger()

SONAR_BASE_COSTS: dict[str, float] = {
    "sonar": 0.01,
    "sonar-pro": 0.02,
    "sonar-reasoning": 0.03,
    "sonar-reasoning-pro": 0.04,
    "sonar-deep-research": 0.05,
}
COST_PER_EVIDENCE_ITEM = 0.001


def calculate_sonar_cost(model: str, evidence_count: int) -> float:
    """Flat per-model base cost plus a surcharge per evidence item."""
    base_cost = SONAR_BASE_COSTS.get(model, SONAR_BASE_COSTS["sonar"])
    return base_cost + evidence_count * COST_PER_EVIDENCE_ITEM


def _extract_answer(raw: Mapping[str, Any]) -> str:
    choices = raw.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        if isinstance(choice, str):
            return choice
        if isinstance(choice, Mapping):
            message = choice.get("message")
            if isinstance(message, Mapping) and message.get("content"):
                return str(message["content"])
            if choice.get("text"):
                return str(choice["text"])
        return ""

    answer = raw.get("answer")
    return str(answer) if answer else ""


def _citation_to_result(citation: Any) -> SearchResult | None:
    # Sonar returns either full citation objects or bare URL strings
    if isinstance(citation, str):
        return normalize_result({"title": citation, "url": citation})
    return normalize_result(citation)


def normalize_answer(raw: Any) -> dict[str, Any]:
    """
    Map the heterogeneous answer payloads onto one canonical shape.

    Accepts the chat-completion layout (choices[0].message.content) as well
    as a flat `answer` field. Citations are normalized and filtered like
    search results; highlights keep string entries only.
    """
    if not isinstance(raw, Mapping):
        return {"answer": "", "clusters": [], "highlights": [], "citations": []}

    citations: list[SearchResult] = []
    raw_citations = raw.get("citations")
    if isinstance(raw_citations, list):
        for citation in raw_citations:
            result = _citation_to_result(citation)
            if result is not None:
                citations.append(result)

    raw_highlights = raw.get("highlights")
    highlights = (
        [item for item in raw_highlights if isinstance(item, str)]
        if isinstance(raw_highlights, list)
        else []
    )

    raw_clusters = raw.get("clusters")
    clusters = list(raw_clusters) if isinstance(raw_clusters, list) else []

    return {
        "answer": _extract_answer(raw),
        "clusters": clusters,
        "highlights": highlights,
        "citations": citations,
    }


class AnswerEscalator:
    """Escalates a search into a Sonar answer with citations."""

    ANSWER_PATH = "/chat/completions"
    SEARCH_DOMAIN = "scholarly"
    CITATION_STYLE = "markdown"

    def __init__(self, search_client: SearchClient) -> None:
        self.search_client = search_client

    async def generate_answer(self, params: SearchParams | Mapping[str, Any]) -> SearchResponse:
        """
        Generate an answer with a Sonar model.

        1. Require an explicit sonar_model (checked before any network call)
        2. Run a normal search to build the evidence base
        3. Send query and evidence to the answer engine
        4. Merge evidence, citations, highlights and clusters

        Raises:
            WebSearchError: INVALID_PARAMETERS without a model, or any error
                from the evidence search or the answer call
        """
        search_params = parse_params(params)
        model = search_params.sonar_model
        if not model:
            raise WebSearchError(
                WebSearchErrorCode.INVALID_PARAMETERS,
                "Sonar model is required for sonar_answer engine",
                "Set sonar_model to one of: " + ", ".join(SONAR_BASE_COSTS),
            )

        logger.info("Generating answer with Sonar model", query=search_params.q, model=model)

        evidence = await self.search_client.search(search_params)

        payload = {
            "model": model,
            "query": search_params.q,
            "search_domain": self.SEARCH_DOMAIN,
            "citations": self.CITATION_STYLE,
            "evidence": [result.model_dump() for result in evidence.results],
        }

        start = time.perf_counter()
        raw = await self.search_client.post_json(self.ANSWER_PATH, payload)
        answer_time = int((time.perf_counter() - start) * 1000)

        normalized = normalize_answer(raw)
        citations = normalized["citations"] or list(evidence.results)

        response = SearchResponse(
            results=evidence.results,
            meta=SearchMeta(
                query=search_params.q,
                top_k=search_params.effective_top_k,
                time_range=search_params.effective_time_range,
                cost_estimate=calculate_sonar_cost(model, len(evidence.results)),
                cache_hit=False,
                response_time=evidence.meta.response_time + answer_time,
            ),
            clusters=normalized["clusters"],
            highlights=normalized["highlights"],
            citations=citations,
            answer=normalized["answer"] or None,
        )

        logger.info(
            "Sonar answer generation completed",
            query=search_params.q,
            model=model,
            result_count=len(response.results),
            citation_count=len(citations),
        )
        return response
