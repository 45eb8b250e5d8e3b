"""Search tools package."""

from websearch.tools.answer_escalator import AnswerEscalator
from websearch.tools.cache import SearchCache
from websearch.tools.engine import SearchEngine, create_search_client
from websearch.tools.rate_limiter import RateLimiter
from websearch.tools.search_client import SearchClient

__all__ = [
    "AnswerEscalator",
    "RateLimiter",
    "SearchCache",
    "SearchClient",
    "SearchEngine",
    "create_search_client",
]
