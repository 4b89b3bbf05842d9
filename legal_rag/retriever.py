"""
Cache-checked, batched retrieval.

Lookup order for a query:
1. Approximate match: embed the query (embedding cache) and reuse the
   documents of a cached query with a near-identical embedding and the
   same filter
2. Exact match: retrieval cache keyed on (query, filter)
3. Miss: hybrid search through the adaptive batcher, result cached

Failure handling:
- Embedding or vector-index failures -> RetrievalError (request fails)
- Any other failure inside the cache layer -> logged, then direct retrieval
  (a cache problem never fails a request)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .batcher import AdaptiveBatcher
from .cache import EmbedFn, SimilarityCache
from .errors import RagError, RetrievalError
from .hybrid_search import DocumentLike, HybridSearcher, SearchResult

logger = logging.getLogger(__name__)


class Retriever:
    """Vector index lookups behind the similarity cache and adaptive batcher."""

    def __init__(
        self,
        searcher: HybridSearcher,
        cache: SimilarityCache,
        batcher: AdaptiveBatcher,
        embed_fn: EmbedFn,
        approximate_match: bool = True,
        rerank: bool = False,
    ):
        self.searcher = searcher
        self.cache = cache
        self.batcher = batcher
        self.embed_fn = embed_fn
        self.approximate_match = approximate_match
        self.rerank = rerank

    async def retrieve(
        self, query: str, filter: dict[str, Any] | None = None
    ) -> list[DocumentLike]:
        """
        Return ranked documents for `query`.

        Args:
            query: User's question
            filter: Optional metadata filter (e.g. {"doc_id": ...}); also part
                of the cache key so filtered and unfiltered results never mix

        Raises:
            RetrievalError: embedding or index call failed
        """
        try:
            return await self._cached(query, filter)
        except RagError:
            raise
        except Exception as e:
            logger.warning(
                f"Cache layer failed, retrieving directly: {type(e).__name__}",
                extra={"error_code": "CACHE_ERROR"},
            )
            return await self._direct(query, filter)

    async def _cached(
        self, query: str, filter: dict[str, Any] | None
    ) -> list[DocumentLike]:
        if self.approximate_match:
            embedding = await self.cache.get_or_compute_embedding(query, self._embed)
            approx = self.cache.find_approximate_match(embedding, filter)
            if approx is not None:
                logger.info("Approximate retrieval cache hit", extra={"doc_count": len(approx)})
                return approx

        async def compute(q: str) -> list[DocumentLike]:
            return await self._direct(q, filter)

        return await self.cache.get_or_compute_retrieval(query, compute, filter)

    async def _embed(self, text: str) -> list[float]:
        try:
            return await self.embed_fn(text)
        except Exception as e:
            raise RetrievalError(
                "Embedding call failed", {"provider_error": type(e).__name__}
            ) from e

    async def _direct(
        self, query: str, filter: dict[str, Any] | None
    ) -> list[DocumentLike]:
        search = self.searcher.search_with_rerank if self.rerank else self.searcher.search

        async def processor(batch: list[str]) -> list[list[SearchResult]]:
            return list(await asyncio.gather(*(search(q, filter) for q in batch)))

        try:
            per_query = await self.batcher.process_batch([query], processor)
        except RagError:
            raise
        except Exception as e:
            raise RetrievalError(
                "Vector index call failed", {"provider_error": type(e).__name__}
            ) from e

        return [result.document for results in per_query for result in results]
