"""Resilient web search client with caching, rate limiting and SSRF guards."""

from websearch.tools import AnswerEscalator, SearchClient, SearchEngine, create_search_client
from websearch.utils.exceptions import WebSearchError, WebSearchErrorCode
from websearch.utils.models import SearchParams, SearchResponse, SearchResult

__all__ = [
    "AnswerEscalator",
    "SearchClient",
    "SearchEngine",
    "SearchParams",
    "SearchResponse",
    "SearchResult",
    "WebSearchError",
    "WebSearchErrorCode",
    "create_search_client",
]
