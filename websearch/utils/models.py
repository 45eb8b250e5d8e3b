"""Data models for the web search client."""

from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

TimeRange = Literal["any", "day", "week", "month", "year"]
DedupeStrategy = Literal["none", "domain", "title"]
Engine = Literal["raw_search", "sonar_answer"]
SonarModel = Literal[
    "sonar", "sonar-pro", "sonar-reasoning", "sonar-reasoning-pro", "sonar-deep-research"
]


class SearchResult(BaseModel):
    """A single normalized search hit."""

    title: str
    url: str
    snippet: str = ""
    published_at: str | None = None
    source: str | None = None
    score: float | None = None

    model_config = ConfigDict(frozen=True)


class SearchMeta(BaseModel):
    """Bookkeeping attached to every search response."""

    query: str
    top_k: int
    time_range: str
    cost_estimate: float
    cache_hit: bool = False
    response_time: int = Field(default=0, description="Network time in milliseconds")


class SearchResponse(BaseModel):
    """Result of a search or answer-generation call."""

    results: list[SearchResult]
    meta: SearchMeta
    clusters: list[Any] | None = None
    highlights: list[str] | None = None
    citations: list[SearchResult] | None = None
    answer: str | None = None

    def as_cache_hit(self) -> "SearchResponse":
        """Independent deep copy of this response flagged as served from cache."""
        copied = self.model_copy(deep=True)
        copied.meta.cache_hit = True
        return copied


class SearchParams(BaseModel):
    """Validated search parameters.

    Optional fields stay None when the caller leaves them out, so cache keys
    and upstream payloads only carry what was actually requested.
    """

    DEFAULT_TOP_K: ClassVar[int] = 10
    DEFAULT_TIME_RANGE: ClassVar[str] = "any"

    q: str = Field(min_length=1, description="Query text")
    top_k: int | None = Field(default=None, ge=1, le=20)
    time_range: TimeRange | None = None
    site: str | None = None
    lang: str | None = Field(default=None, description="ISO language code, e.g. en, zh, fr")
    region: str | None = Field(default=None, description="Region preference, e.g. US, EU")
    safe_mode: bool | None = None
    include_snippets: bool | None = None
    operators: list[str] | None = Field(default=None, description='e.g. OR, AND, "exact"')
    exclude_sites: list[str] | None = None
    from_: str | None = Field(default=None, alias="from", description="Start date YYYY-MM-DD")
    to: str | None = Field(default=None, description="End date YYYY-MM-DD")
    dedupe: DedupeStrategy | None = None
    aggregate: bool | None = None
    engine: Engine | None = None
    sonar_model: SonarModel | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("q")
    @classmethod
    def _query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value

    @property
    def effective_top_k(self) -> int:
        return self.top_k or self.DEFAULT_TOP_K

    @property
    def effective_time_range(self) -> str:
        return self.time_range or self.DEFAULT_TIME_RANGE

    def build_query(self) -> str:
        """Query text with operator terms appended."""
        if self.operators:
            return f"{self.q} {' '.join(self.operators)}"
        return self.q
