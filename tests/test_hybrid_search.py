"""
Tests for hybrid search.

Tests cover:
- BM25-style keyword score and min-max normalization
- Blended ranking, stable ties, vector-only mode
- Score alignment between the two index calls
- LLM rerank: averaging, failure modes
"""

from dataclasses import dataclass, field
from typing import Any

import pytest

from legal_rag.errors import RetrievalError
from legal_rag.hybrid_search import (
    HybridConfig,
    HybridSearcher,
    keyword_score,
    normalize_scores,
    tokenize,
)


# ============================================================================
# FAKES
# ============================================================================


@dataclass
class FakeDoc:
    """Fake document for testing."""

    page_content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FakeIndex:
    """VectorIndex returning fixed documents and scores."""

    docs: list[FakeDoc]
    scores: list[float]
    filters: list[Any] = field(default_factory=list)

    async def retrieve_top_k(self, query, k, filter=None):
        self.filters.append(filter)
        return self.docs[:k]

    async def score_top_k(self, query, k, filter=None):
        return list(zip(self.docs, self.scores))[:k]


NOTICE = FakeDoc("The notice period for termination is thirty days.", {"title": "Lease"})
UNRELATED = FakeDoc("Payment is due on the first business day of each month.", {"title": "Lease"})


# ============================================================================
# PURE SCORING
# ============================================================================


def test_tokenize_lowercases():
    assert tokenize("Notice  PERIOD") == ["notice", "period"]
    assert tokenize("") == []


def test_keyword_score_zero_without_terms():
    assert keyword_score("payment schedule", "notice period") == 0.0


def test_keyword_score_empty_document():
    assert keyword_score("", "notice") == 0.0


def test_keyword_score_known_value():
    """Two matching tokens in a 2-token document."""
    doc_len_norm = 1 - 0.75 + 0.75 * (2 / 500)
    per_token = 1 * 2.5 / (1 + 1.5 * doc_len_norm)

    assert keyword_score("notice period", "notice period") == pytest.approx(2 * per_token)


def test_keyword_score_rewards_term_frequency():
    assert keyword_score("notice notice clause", "notice") > keyword_score(
        "notice other clause", "notice"
    )


def test_keyword_score_repeated_query_token_counts_twice():
    once = keyword_score("notice clause", "notice")
    assert keyword_score("notice clause", "notice notice") == pytest.approx(2 * once)


def test_normalize_scores():
    assert normalize_scores([1.0, 2.0, 3.0]) == [0.0, 0.5, 1.0]


def test_normalize_scores_all_equal():
    assert normalize_scores([0.4, 0.4]) == [1.0, 1.0]


def test_normalize_scores_empty():
    assert normalize_scores([]) == []


# ============================================================================
# SEARCH
# ============================================================================


@pytest.mark.asyncio
async def test_keyword_breaks_vector_tie():
    """With equal vector scores, the document matching query terms ranks first."""
    index = FakeIndex(docs=[UNRELATED, NOTICE], scores=[0.8, 0.8])
    searcher = HybridSearcher(index)

    results = await searcher.search("notice period")

    assert [r.document for r in results] == [NOTICE, UNRELATED]
    assert results[0].combined_score == pytest.approx(1.0)
    assert results[1].combined_score == pytest.approx(0.65)


@pytest.mark.asyncio
async def test_weights_blend_scores():
    index = FakeIndex(docs=[UNRELATED, NOTICE], scores=[0.9, 0.1])
    searcher = HybridSearcher(index, HybridConfig(vector_weight=0.65, keyword_weight=0.35))

    results = await searcher.search("notice period")

    # UNRELATED: vector 1, keyword 0 -> 0.65; NOTICE: vector 0, keyword 1 -> 0.35
    assert [r.document for r in results] == [UNRELATED, NOTICE]
    assert results[0].vector_score == 1.0
    assert results[1].keyword_score == 1.0


@pytest.mark.asyncio
async def test_exact_ties_keep_index_order():
    a = FakeDoc("alpha clause text")
    b = FakeDoc("beta clause text")
    searcher = HybridSearcher(FakeIndex(docs=[a, b], scores=[0.5, 0.5]))

    results = await searcher.search("unmatched")

    assert [r.document for r in results] == [a, b]


@pytest.mark.asyncio
async def test_vector_only_mode():
    index = FakeIndex(docs=[UNRELATED, NOTICE], scores=[0.9, 0.3])
    searcher = HybridSearcher(index, HybridConfig(hybrid=False))

    results = await searcher.search("notice period")

    assert [r.document for r in results] == [UNRELATED, NOTICE]
    assert all(r.keyword_score == 0.0 for r in results)
    assert [r.combined_score for r in results] == [1.0, 0.0]


@pytest.mark.asyncio
async def test_missing_vector_score_counts_as_zero():
    """Documents absent from the scored call get a raw vector score of 0."""

    class PartialIndex(FakeIndex):
        async def score_top_k(self, query, k, filter=None):
            return [(self.docs[0], 0.7)]

    index = PartialIndex(docs=[UNRELATED, NOTICE], scores=[])
    searcher = HybridSearcher(index, HybridConfig(hybrid=False))

    results = await searcher.search("anything")

    assert results[0].document == UNRELATED
    assert results[1].vector_score == 0.0


@pytest.mark.asyncio
async def test_top_k_and_filter_passed_to_index():
    index = FakeIndex(docs=[NOTICE, UNRELATED], scores=[0.9, 0.8])
    searcher = HybridSearcher(index, HybridConfig(top_k=1))

    results = await searcher.search("notice", {"doc_id": "d1"})

    assert len(results) == 1
    assert index.filters == [{"doc_id": "d1"}]


@pytest.mark.asyncio
async def test_no_hits():
    searcher = HybridSearcher(FakeIndex(docs=[], scores=[]))

    assert await searcher.search("notice") == []


# ============================================================================
# RERANK
# ============================================================================


def rating_by_content(ratings: dict[str, str]):
    """Rate fn answering according to which document the prompt contains."""

    async def rate(prompt: str) -> str:
        for needle, rating in ratings.items():
            if needle in prompt:
                return rating
        return "0"

    return rate


@pytest.mark.asyncio
async def test_rerank_averages_rating_with_combined():
    index = FakeIndex(docs=[UNRELATED, NOTICE], scores=[0.8, 0.8])
    rate = rating_by_content({"Payment is due": "1.0", "termination": "0.2"})
    searcher = HybridSearcher(index, rate_fn=rate)

    results = await searcher.search_with_rerank("notice period")

    # NOTICE: (1.0 + 0.2) / 2 = 0.6; UNRELATED: (0.65 + 1.0) / 2 = 0.825
    assert [r.document for r in results] == [UNRELATED, NOTICE]
    assert results[0].combined_score == pytest.approx(0.825)
    assert results[1].combined_score == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_rerank_accepts_json_rating():
    index = FakeIndex(docs=[NOTICE], scores=[0.8])

    async def rate(prompt):
        return '{"score": 0.5}'

    results = await HybridSearcher(index, rate_fn=rate).search_with_rerank("notice")

    assert results[0].combined_score == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_rerank_failure_fails_whole_rerank():
    index = FakeIndex(docs=[UNRELATED, NOTICE], scores=[0.8, 0.8])

    async def rate(prompt):
        if "termination" in prompt:
            raise ConnectionError("LLM unavailable")
        return "0.5"

    with pytest.raises(RetrievalError):
        await HybridSearcher(index, rate_fn=rate).search_with_rerank("notice period")


@pytest.mark.asyncio
async def test_rerank_undecodable_rating_fails():
    index = FakeIndex(docs=[NOTICE], scores=[0.8])

    async def rate(prompt):
        return "Highly relevant, about 0.9"

    with pytest.raises(RetrievalError):
        await HybridSearcher(index, rate_fn=rate).search_with_rerank("notice")


@pytest.mark.asyncio
async def test_rerank_without_rate_fn():
    with pytest.raises(RetrievalError):
        await HybridSearcher(FakeIndex(docs=[NOTICE], scores=[0.8])).search_with_rerank("notice")
