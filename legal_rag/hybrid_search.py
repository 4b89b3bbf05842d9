"""
Hybrid search: vector similarity blended with BM25 keyword relevance.

Why hybrid?
- Dense retrieval captures meaning ("termination" ~ "ending the lease")
- BM25 rewards exact legal terms ("Article L.121-1", "30-day notice period")
- Scores are min-max normalized per query before blending, so the raw
  scales of the two signals don't matter

Ranking:
- combined = vector_weight * vector + keyword_weight * keyword (0.65 / 0.35)
- sorted descending by combined score; Python's sort is stable, so exact ties
  keep the vector index order

Optional LLM rerank:
- each result is rated 0-1 by the LLM, final score = mean(combined, rating)
- ratings are decoded strictly (see decode.py)
- one failed rating fails the whole rerank (RetrievalError), there is
  no partial degradation
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol

from .decode import Err, decode_relevance
from .errors import RetrievalError

logger = logging.getLogger(__name__)


class DocumentLike(Protocol):
    """Protocol for document-like objects returned by the vector index."""

    page_content: str
    metadata: dict[str, Any]


class VectorIndex(Protocol):
    """External vector index port."""

    async def retrieve_top_k(
        self, query: str, k: int, filter: dict[str, Any] | None = None
    ) -> list[DocumentLike]: ...

    async def score_top_k(
        self, query: str, k: int, filter: dict[str, Any] | None = None
    ) -> list[tuple[DocumentLike, float]]: ...


RateFn = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class HybridConfig:
    """Configuration for hybrid search."""

    top_k: int = 5
    vector_weight: float = 0.65
    keyword_weight: float = 0.35
    k1: float = 1.5
    b: float = 0.75
    avg_doc_len: float = 500.0
    hybrid: bool = True
    rerank_snippet_chars: int = 500


@dataclass(frozen=True)
class SearchResult:
    """One ranked document with its normalized scores."""

    document: DocumentLike
    vector_score: float
    keyword_score: float
    combined_score: float


_RERANK_PROMPT = """Rate the relevance of this document to the query on a scale of 0 to 1.
Reply with the number only.

Query: {query}

Document: {snippet}"""


# ============================================================================
# PURE SCORING FUNCTIONS
# ============================================================================


def tokenize(text: str) -> list[str]:
    """Lowercase whitespace tokenization."""
    return (text or "").lower().split()


def keyword_score(
    text: str,
    query: str,
    k1: float = 1.5,
    b: float = 0.75,
    avg_doc_len: float = 500.0,
) -> float:
    """
    BM25-style keyword score of `text` for `query` (no IDF term).

    Each query token present in the document adds
    tf*(k1+1) / (tf + k1*(1 - b + b*docLen/avgDocLen)). Repeated query
    tokens contribute again.
    """
    doc_tokens = tokenize(text)
    if not doc_tokens:
        return 0.0

    counts: dict[str, int] = {}
    for tok in doc_tokens:
        counts[tok] = counts.get(tok, 0) + 1

    length_norm = 1 - b + b * (len(doc_tokens) / avg_doc_len)
    score = 0.0
    for word in tokenize(query):
        tf = counts.get(word, 0)
        if tf:
            score += tf * (k1 + 1) / (tf + k1 * length_norm)
    return score


def normalize_scores(scores: Sequence[float]) -> list[float]:
    """Min-max normalize to [0, 1]; all-equal scores normalize to 1."""
    if not scores:
        return []
    lo, hi = min(scores), max(scores)
    if hi == lo:
        return [1.0] * len(scores)
    return [(s - lo) / (hi - lo) for s in scores]


def _content_key(doc: DocumentLike) -> str:
    return doc.page_content[:100]


# ============================================================================
# SEARCHER
# ============================================================================


class HybridSearcher:
    """Rank vector-index hits by blended vector and keyword relevance."""

    def __init__(
        self,
        index: VectorIndex,
        config: HybridConfig | None = None,
        rate_fn: RateFn | None = None,
    ):
        self.index = index
        self.config = config or HybridConfig()
        self.rate_fn = rate_fn

    async def search(
        self, query: str, filter: dict[str, Any] | None = None
    ) -> list[SearchResult]:
        """
        Retrieve the top-K documents for `query` and rank them.

        Args:
            query: User's search query
            filter: Optional metadata filter passed to the index

        Returns:
            SearchResults sorted by combined score (descending, stable)
        """
        cfg = self.config
        hits = await self.index.retrieve_top_k(query, cfg.top_k, filter)
        if not hits:
            return []

        # Scores are fetched separately and aligned on content
        scored = await self.index.score_top_k(query, cfg.top_k, filter)
        score_map = {_content_key(doc): float(score) for doc, score in scored}
        raw_vector = [score_map.get(_content_key(doc), 0.0) for doc in hits]
        vector_scores = normalize_scores(raw_vector)

        if cfg.hybrid:
            raw_keyword = [
                keyword_score(doc.page_content, query, cfg.k1, cfg.b, cfg.avg_doc_len)
                for doc in hits
            ]
            keyword_scores = normalize_scores(raw_keyword)
            combined = [
                v * cfg.vector_weight + k * cfg.keyword_weight
                for v, k in zip(vector_scores, keyword_scores)
            ]
        else:
            keyword_scores = [0.0] * len(hits)
            combined = list(vector_scores)

        results = [
            SearchResult(
                document=doc,
                vector_score=v,
                keyword_score=k,
                combined_score=c,
            )
            for doc, v, k, c in zip(hits, vector_scores, keyword_scores, combined)
        ]
        results.sort(key=lambda r: r.combined_score, reverse=True)

        logger.info(
            "Hybrid search complete",
            extra={
                "result_count": len(results),
                "scored_count": len(scored),
                "top_score": round(results[0].combined_score, 4),
            },
        )
        return results

    async def search_with_rerank(
        self, query: str, filter: dict[str, Any] | None = None
    ) -> list[SearchResult]:
        """
        Search, then average each combined score with an LLM relevance rating.

        Raises:
            RetrievalError: if no rate function is configured, or any single
                rating call fails or returns an undecodable reply
        """
        if self.rate_fn is None:
            raise RetrievalError("Rerank requested but no rating function is configured")

        results = await self.search(query, filter)
        if not results:
            return []

        ratings = await asyncio.gather(*(self._rate(query, r) for r in results))

        reranked = [
            replace(r, combined_score=(r.combined_score + rating) / 2)
            for r, rating in zip(results, ratings)
        ]
        reranked.sort(key=lambda r: r.combined_score, reverse=True)

        logger.info("Reranked documents", extra={"result_count": len(reranked)})
        return reranked

    async def _rate(self, query: str, result: SearchResult) -> float:
        snippet = result.document.page_content[: self.config.rerank_snippet_chars]
        prompt = _RERANK_PROMPT.format(query=query, snippet=snippet)

        try:
            raw = await self.rate_fn(prompt)
        except Exception as e:
            raise RetrievalError(
                "Rerank rating call failed", {"provider_error": type(e).__name__}
            ) from e

        decoded = decode_relevance(raw)
        if isinstance(decoded, Err):
            logger.warning(
                f"Undecodable relevance rating: {decoded.error.message}",
                extra={"error_code": "RERANK_PARSE_ERROR", "reply_len": len(decoded.error.raw)},
            )
            raise RetrievalError(
                "Rerank rating could not be decoded", {"reason": decoded.error.message}
            )
        return decoded.value
