"""In-memory TTL cache for search responses."""

import asyncio
import contextlib
import time
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict

from websearch.utils.config import DEFAULT_CACHE_TTL_MINUTES, positive_int_or_default
from websearch.utils.models import SearchParams

logger = structlog.get_logger()

SWEEP_INTERVAL_SECONDS = 5 * 60
KEY_SEPARATOR = "|"


class CacheEntry(BaseModel):
    """A stored value with its write time and lifetime."""

    data: Any
    timestamp: float
    ttl_ms: int

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class SearchCache:
    """
    Key/value store with per-entry TTL.

    Expired entries are evicted lazily on read and by a periodic background
    sweep, which bounds growth from keys that are written once and never read.
    """

    def __init__(
        self,
        default_ttl_minutes: Any = DEFAULT_CACHE_TTL_MINUTES,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        auto_sweep: bool = True,
    ) -> None:
        minutes = positive_int_or_default(default_ttl_minutes, DEFAULT_CACHE_TTL_MINUTES)
        self.default_ttl_ms = minutes * 60 * 1000
        self.sweep_interval = sweep_interval
        self.auto_sweep = auto_sweep
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweeper: asyncio.Task[None] | None = None

    def _age_ms(self, entry: CacheEntry) -> float:
        return (self._clock() - entry.timestamp) * 1000

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        if self.auto_sweep:
            self.start_sweeper()
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._age_ms(entry) > entry.ttl_ms:
            del self._entries[key]
            return None

        return entry.data

    def set(self, key: str, data: Any, ttl_ms: int | None = None) -> None:
        """Store data under key, replacing any previous entry."""
        if self.auto_sweep:
            self.start_sweeper()
        ttl = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        self._entries[key] = CacheEntry(data=data, timestamp=self._clock(), ttl_ms=ttl)
        logger.debug("Cache entry set", key=key, ttl_ms=ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)
        logger.debug("Cache entry deleted", key=key)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get_stats(self) -> dict[str, int]:
        return {"size": len(self._entries), "default_ttl_ms": self.default_ttl_ms}

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        expired = [
            key for key, entry in self._entries.items() if self._age_ms(entry) > entry.ttl_ms
        ]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug("Cache cleanup completed", expired_count=len(expired))
        return len(expired)

    def start_sweeper(self) -> None:
        """Start the background sweep task if an event loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        sweeper = self._sweeper
        if sweeper is not None and not sweeper.done() and sweeper.get_loop() is loop:
            return
        self._sweeper = loop.create_task(self._sweep_forever())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    async def close(self) -> None:
        """Stop the background sweep task."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None or sweeper.done():
            return
        sweeper.cancel()
        if sweeper.get_loop() is asyncio.get_running_loop():
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def make_cache_key(params: SearchParams) -> str:
    """
    Derive a deterministic cache key from every result-affecting parameter.

    Fields are joined in a fixed order, unset fields are omitted.
    """
    parts: list[Any] = [
        params.q,
        params.top_k,
        params.time_range,
        params.site,
        params.lang,
        params.region,
        params.safe_mode,
        params.include_snippets,
        params.from_,
        params.to,
        params.dedupe,
    ]
    if params.operators is not None:
        parts.append(",".join(params.operators))
    if params.exclude_sites is not None:
        parts.append(",".join(params.exclude_sites))

    return KEY_SEPARATOR.join(_render(part) for part in parts if part is not None)
