"""
Query Embedding Cache.

Caches query-time embeddings so repeated searches skip the provider. The
cache is handed to the search engine explicitly; there is no module-level
instance.

Eviction policy: entries expire `ttl_seconds` after they were stored (a hit
does not extend the lifetime), and the least recently used entry is evicted
once `max_size` is exceeded.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from taskmail.config.models import CacheConfig

LOG_QUERY_TRUNCATE_LEN = 50

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_MAX_CACHE_SIZE = 100


class EmbeddingCache(ABC):
    """Lookup of query text to embedding vector."""

    @abstractmethod
    def get(self, query: str, model: str = "") -> list[float] | None: ...

    @abstractmethod
    def put(self, query: str, embedding: list[float], model: str = "") -> None: ...

    @abstractmethod
    def clear(self) -> None: ...


class NullEmbeddingCache(EmbeddingCache):
    """Cache that never stores anything."""

    def get(self, query: str, model: str = "") -> list[float] | None:
        return None

    def put(self, query: str, embedding: list[float], model: str = "") -> None:
        return None

    def clear(self) -> None:
        return None


class TTLEmbeddingCache(EmbeddingCache):
    """
    Thread-safe LRU cache for query embeddings with TTL expiration.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: OrderedDict[str, tuple[float, tuple[float, ...]]] = OrderedDict()
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock

    @classmethod
    def from_config(cls, config: CacheConfig) -> TTLEmbeddingCache:
        return cls(ttl_seconds=config.ttl_seconds, max_size=config.max_size)

    def _make_key(self, query: str, model: str = "") -> str:
        return f"{model}::{query}"

    def get(self, query: str, model: str = "") -> list[float] | None:
        """
        Get cached embedding if available and not expired.
        """
        key = self._make_key(query, model)
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            stored_at, embedding = entry
            if (self._clock() - stored_at) >= self._ttl:
                self._cache.pop(key)
                logger.debug(
                    "Cache miss (expired): query=%s", query[:LOG_QUERY_TRUNCATE_LEN]
                )
                return None

            self._cache.move_to_end(key)
            return list(embedding)

    def put(self, query: str, embedding: list[float], model: str = "") -> None:
        """
        Cache an embedding, evicting least recently used entries past max size.
        """
        if self._max_size <= 0:
            return
        key = self._make_key(query, model)
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = (self._clock(), tuple(embedding))

            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)
                logger.debug(
                    "Cache eviction: removed oldest entry, %d remaining",
                    len(self._cache),
                )

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            now = self._clock()
            valid_count = sum(
                1 for ts, _ in self._cache.values() if (now - ts) < self._ttl
            )
            return {
                "total_entries": len(self._cache),
                "valid_entries": valid_count,
                "max_size": self._max_size,
                "ttl_seconds": self._ttl,
            }
