"""
Similarity cache for embeddings and retrieval results.

Two independent maps share one configuration:
- embedding cache: (text, metadata) -> query embedding
- retrieval cache: (query, metadata) -> retrieved documents

Design decisions:
- Keys are `json.dumps([text, metadata], sort_keys=True)`: stable across
  metadata key order and reversible, so the approximate-match scan can recover
  each cached query and its filter
- TTL: an entry is a miss from `expires_at` onwards, never served stale
- Eviction after every insertion: expired entries first, then oldest
  `created_at` until the map fits `max_size`
- Approximate match: a new query embedding reuses cached documents when it is
  close enough (cosine) to the embedding of a cached query with the same filter
- Durable store is optional and best-effort: load/save failures are logged
  and the cache keeps working in memory
- Empty retrieval results are never cached: a document indexed later must
  be found on the next request

Concurrency:
- Designed for single-threaded asyncio. Insert + evict never awaits in
  between, so map mutation is atomic with respect to other coroutines.
  A multi-threaded host must add a lock around `_insert`.
- Saves are serialized by an asyncio.Lock, and each save snapshots the maps
  once it holds the lock, so the last save written is always the latest state.

Approximate match tie-break:
- policy "first": first live entry above threshold in insertion order
  (oldest insertion wins)
- policy "best": highest similarity above threshold
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Literal, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

EmbedFn = Callable[[str], Awaitable[list[float]]]
RetrieveFn = Callable[[str], Awaitable[list[Any]]]

# Hit-rate statistics only look at entries created in this window
_HIT_RATE_WINDOW_SECONDS = 5 * 60


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with its creation and expiry timestamps (epoch seconds)."""

    value: T
    created_at: float
    expires_at: float

    def is_live(self, now: float) -> bool:
        return self.expires_at > now


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for SimilarityCache."""

    max_size: int = 1000
    ttl_seconds: float = 30 * 60
    similarity_threshold: float = 0.95
    persist: bool = False
    match_policy: Literal["first", "best"] = "first"


class CacheStore(Protocol):
    """Durable backing store for cache snapshots."""

    async def load(self) -> dict[str, dict[str, CacheEntry]]: ...

    async def save(self, snapshot: dict[str, dict[str, CacheEntry]]) -> None: ...


# ============================================================================
# PURE HELPERS
# ============================================================================


def make_cache_key(text: str, metadata: dict[str, Any] | None = None) -> str:
    """Build a reversible cache key from text and optional metadata."""
    return json.dumps([text, metadata or None], sort_keys=True, ensure_ascii=False)


def split_cache_key(key: str) -> tuple[str, dict[str, Any] | None]:
    """Inverse of make_cache_key."""
    text, metadata = json.loads(key)
    return text, metadata


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 when either norm is zero or the dimensions differ
    (e.g. vectors from two embedding models), never NaN.
    """
    if len(a) != len(b) or not a:
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot / (norm_a * norm_b)


# ============================================================================
# CACHE
# ============================================================================


class SimilarityCache:
    """
    Key-value and approximate-nearest-value cache for embeddings and retrievals.

    Create it once at startup (or use `SimilarityCache.open` to load a durable
    snapshot), inject it where needed, and `close()` it on shutdown.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        store: CacheStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CacheConfig()
        self._store = store if self.config.persist else None
        self._clock = clock
        self._embeddings: dict[str, CacheEntry[list[float]]] = {}
        self._retrievals: dict[str, CacheEntry[list[Any]]] = {}
        self._persist_lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        config: CacheConfig | None = None,
        store: CacheStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> SimilarityCache:
        """Create a cache and load the durable snapshot if persistence is enabled."""
        cache = cls(config, store, clock)
        await cache._load()
        return cache

    async def close(self) -> None:
        """Flush the current state to the durable store."""
        await self._persist()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_or_compute_embedding(
        self,
        text: str,
        embed_fn: EmbedFn,
        metadata: dict[str, Any] | None = None,
    ) -> list[float]:
        """
        Return the cached embedding for `text`, computing it on a miss.

        Errors raised by `embed_fn` propagate to the caller.
        """
        key = make_cache_key(text, metadata)
        cached = self._embeddings.get(key)
        if cached is not None and cached.is_live(self._clock()):
            return cached.value

        embedding = await embed_fn(text)
        self._insert(self._embeddings, key, embedding)
        await self._persist()
        return embedding

    async def get_or_compute_retrieval(
        self,
        query: str,
        retrieve_fn: RetrieveFn,
        metadata: dict[str, Any] | None = None,
    ) -> list[Any]:
        """
        Return cached documents for `query`, retrieving them on a miss.

        An empty result is returned but not cached.
        Errors raised by `retrieve_fn` propagate to the caller.
        """
        key = make_cache_key(query, metadata)
        cached = self._retrievals.get(key)
        if cached is not None and cached.is_live(self._clock()):
            logger.debug("Retrieval cache hit")
            return cached.value

        documents = await retrieve_fn(query)
        if not documents:
            return documents
        self._insert(self._retrievals, key, documents)
        await self._persist()
        return documents

    def find_approximate_match(
        self,
        embedding: Sequence[float],
        metadata: dict[str, Any] | None = None,
    ) -> list[Any] | None:
        """
        Find cached documents for a query whose embedding is close to `embedding`.

        Only retrieval entries cached with the same `metadata` (e.g. the same
        document filter) are considered. An entry matches when the live
        embedding of its query has cosine similarity strictly above
        `similarity_threshold`.

        This is a linear scan, fine for a few thousand entries.

        Returns:
            The cached documents, or None when nothing matches
        """
        now = self._clock()
        threshold = self.config.similarity_threshold
        wanted = metadata or None
        best: tuple[float, list[Any]] | None = None

        for key, entry in self._retrievals.items():
            if not entry.is_live(now):
                continue

            query, entry_metadata = split_cache_key(key)
            if entry_metadata != wanted:
                continue

            cached_embedding = self._embeddings.get(make_cache_key(query))
            if cached_embedding is None or not cached_embedding.is_live(now):
                continue

            similarity = cosine_similarity(embedding, cached_embedding.value)
            if similarity <= threshold:
                continue

            if self.config.match_policy == "first":
                logger.debug("Approximate cache hit", extra={"similarity": round(similarity, 4)})
                return entry.value
            if best is None or similarity > best[0]:
                best = (similarity, entry.value)

        if best is not None:
            logger.debug("Approximate cache hit", extra={"similarity": round(best[0], 4)})
            return best[1]
        return None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def evict(self) -> None:
        """Drop expired entries, then the oldest ones until each map fits max_size."""
        now = self._clock()
        for cache in (self._embeddings, self._retrievals):
            expired = [k for k, e in cache.items() if e.expires_at <= now]
            for key in expired:
                del cache[key]

            overflow = len(cache) - self.config.max_size
            if overflow > 0:
                # stable sort: equal created_at keeps insertion order
                oldest = sorted(cache.items(), key=lambda item: item[1].created_at)[:overflow]
                for key, _ in oldest:
                    del cache[key]

    async def clear(self) -> None:
        """Empty both maps and the durable store."""
        self._embeddings.clear()
        self._retrievals.clear()
        await self._persist()

    def stats(self) -> dict[str, Any]:
        """Cache sizes and recent hit rates."""
        return {
            "embedding_cache_size": len(self._embeddings),
            "retrieval_cache_size": len(self._retrievals),
            "hit_rate": {
                "embeddings": self._hit_rate(self._embeddings),
                "retrievals": self._hit_rate(self._retrievals),
            },
        }

    def _hit_rate(self, cache: dict[str, CacheEntry]) -> float:
        now = self._clock()
        window_start = now - _HIT_RATE_WINDOW_SECONDS
        total = 0
        hits = 0
        for entry in cache.values():
            if entry.created_at > window_start:
                total += 1
                if entry.is_live(now):
                    hits += 1
        return 0.0 if total == 0 else hits / total

    def _insert(self, cache: dict[str, CacheEntry], key: str, value: Any) -> None:
        now = self._clock()
        # re-insertion moves the key to the end of the insertion order
        cache.pop(key, None)
        cache[key] = CacheEntry(
            value=value,
            created_at=now,
            expires_at=now + self.config.ttl_seconds,
        )
        self.evict()

    # ------------------------------------------------------------------
    # Durable store (best effort)
    # ------------------------------------------------------------------

    async def _load(self) -> None:
        if self._store is None:
            return
        try:
            snapshot = await self._store.load()
            self._embeddings = dict(snapshot.get("embeddings", {}))
            self._retrievals = dict(snapshot.get("retrievals", {}))
        except Exception as e:
            logger.warning(
                f"Failed to load vector cache, starting empty: {e}",
                extra={"error_code": "CACHE_STORE_ERROR"},
            )
            self._embeddings = {}
            self._retrievals = {}
            return
        self.evict()
        logger.info(
            "Vector cache loaded",
            extra={
                "embeddings": len(self._embeddings),
                "retrievals": len(self._retrievals),
            },
        )

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            async with self._persist_lock:
                await self._store.save(
                    {"embeddings": dict(self._embeddings), "retrievals": dict(self._retrievals)}
                )
        except Exception as e:
            logger.warning(
                f"Failed to save vector cache: {e}",
                extra={"error_code": "CACHE_STORE_ERROR"},
            )
