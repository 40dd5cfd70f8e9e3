"""In-memory TTL store shared by every proxy handler."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter


LOGGER = structlog.get_logger("rbxg.cache")

CACHE_HITS_COUNTER = GLOBAL_REGISTRY.register(Counter("rbxg_cache_hits_total", "Cache reads served from a fresh entry"))
CACHE_MISSES_COUNTER = GLOBAL_REGISTRY.register(Counter("rbxg_cache_misses_total", "Cache reads with no fresh entry"))
CACHE_EVICTIONS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("rbxg_cache_evictions_total", "Entries evicted to respect the configured capacity")
)

DEFAULT_TTL_SECONDS = 60 * 60


def key_namespace(key: str) -> str:
    """The handler prefix of a cache key, e.g. ``thumbnail`` for ``thumbnail:1818``."""
    return key.split(":", 1)[0]


@dataclass(slots=True)
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    ttl: float


class CacheStore:
    """Key/value store whose freshness is judged by the reader.

    ``get`` takes the TTL to apply, so one entry can be fresh for one caller and
    stale for another. Stale entries are never purged, only overwritten. The
    store grows without bound unless ``max_entries`` is set, in which case the
    least recently used entry is evicted on insert.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._default_ttl = default_ttl
        self._max_entries = max_entries if max_entries and max_entries > 0 else None
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def now(self) -> float:
        return self._clock()

    def get(self, key: str, ttl: Optional[float] = None) -> Any:
        ttl = self._default_ttl if ttl is None else ttl
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.stored_at >= ttl:
            CACHE_MISSES_COUNTER.inc(namespace=key_namespace(key))
            return None
        if self._max_entries is not None:
            self._entries.move_to_end(key)
        CACHE_HITS_COUNTER.inc(namespace=key_namespace(key))
        return entry.payload

    def set(self, key: str, payload: Any, ttl: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        self._entries[key] = CacheEntry(key=key, payload=payload, stored_at=self._clock(), ttl=ttl)
        if self._max_entries is None:
            return
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            CACHE_EVICTIONS_COUNTER.inc(namespace=key_namespace(evicted))
            LOGGER.debug("cache_evicted", cache_key=evicted)

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
