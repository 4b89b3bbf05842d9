"""
Tests for runtime adapters and lifecycle.

Provider objects (ChatOpenAI, VoyageAIEmbeddings, Chroma) are replaced
with mocks: no network access.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from legal_rag.cache import CacheConfig, SimilarityCache
from legal_rag.runtime import (
    ChromaIndex,
    OpenAIGenerator,
    VoyageEmbedder,
    init_runtime,
    make_cache_config,
    make_hybrid_config,
    make_pipeline_config,
    shutdown_runtime,
)
from legal_rag.settings import Settings


async def fake_embed(text):
    return [1.0, 0.0]


class FakeIndex:
    async def retrieve_top_k(self, query, k, filter=None):
        return []

    async def score_top_k(self, query, k, filter=None):
        return []


class FakeGenerator:
    async def generate(self, prompt, temperature):
        return "0.5"

    async def generate_batch(self, prompts, temperature=0.0):
        return ["answer" for _ in prompts]

    async def rate(self, prompt):
        return "0.5"


# ============================================================================
# CONFIGURATION FACTORIES
# ============================================================================


def test_make_cache_config():
    cfg = Settings(
        cache_max_size=10,
        cache_ttl_seconds=60.0,
        cache_similarity_threshold=0.9,
        cache_match_policy="best",
    )

    config = make_cache_config(cfg)

    assert config.max_size == 10
    assert config.ttl_seconds == 60.0
    assert config.similarity_threshold == 0.9
    assert config.match_policy == "best"


def test_make_cache_config_unknown_policy_falls_back_to_first():
    assert make_cache_config(Settings(cache_match_policy="nearest")).match_policy == "first"


def test_make_hybrid_config():
    config = make_hybrid_config(Settings(rag_top_k=8, hybrid_search=False, vector_weight=0.5))

    assert config.top_k == 8
    assert config.hybrid is False
    assert config.vector_weight == 0.5


def test_make_pipeline_config_zero_timeout_disables_deadline():
    assert make_pipeline_config(Settings(stage_timeout_seconds=0.0)).stage_timeout_s is None
    assert make_pipeline_config(Settings(stage_timeout_seconds=12.0)).stage_timeout_s == 12.0


def test_make_pipeline_config_uses_generation_temperature():
    assert make_pipeline_config(Settings(generation_temperature=0.4)).temperature == 0.4


# ============================================================================
# ADAPTERS
# ============================================================================


@pytest.mark.asyncio
async def test_openai_generator_batch_flattens_content():
    llm = MagicMock()
    bound = MagicMock()
    bound.abatch = AsyncMock(
        return_value=[
            SimpleNamespace(content="first"),
            SimpleNamespace(content=[{"type": "text", "text": "second"}]),
        ]
    )
    llm.bind.return_value = bound
    generator = OpenAIGenerator("gpt-4.1-mini", llm=llm)

    assert await generator.generate_batch(["p1", "p2"], 0.2) == ["first", "second"]
    llm.bind.assert_called_once_with(temperature=0.2)
    bound.abatch.assert_awaited_once_with(["p1", "p2"])


@pytest.mark.asyncio
async def test_openai_generator_binds_temperature():
    llm = MagicMock()
    bound = MagicMock()
    bound.ainvoke = AsyncMock(return_value=SimpleNamespace(content="0.7"))
    llm.bind.return_value = bound
    generator = OpenAIGenerator("gpt-4.1-mini", llm=llm)

    assert await generator.generate("prompt", 0.3) == "0.7"
    llm.bind.assert_called_once_with(temperature=0.3)

    await generator.rate("rate this")
    llm.bind.assert_called_with(temperature=0.0)


@pytest.mark.asyncio
async def test_voyage_embedder_delegates_to_embeddings():
    embeddings = MagicMock()
    embeddings.aembed_query = AsyncMock(return_value=[0.1, 0.2])
    embedder = VoyageEmbedder("voyage-3-large", embeddings=embeddings)

    assert await embedder("notice period") == [0.1, 0.2]
    embeddings.aembed_query.assert_awaited_once_with("notice period")


@pytest.mark.asyncio
async def test_chroma_index_passes_filter():
    vectorstore = MagicMock()
    vectorstore.asimilarity_search = AsyncMock(return_value=["doc"])
    vectorstore.asimilarity_search_with_relevance_scores = AsyncMock(return_value=[("doc", 0.9)])
    index = ChromaIndex(vectorstore)

    assert await index.retrieve_top_k("q", 3, {"doc_id": "d1"}) == ["doc"]
    assert await index.score_top_k("q", 3, {"doc_id": "d1"}) == [("doc", 0.9)]
    vectorstore.asimilarity_search.assert_awaited_once_with("q", k=3, filter={"doc_id": "d1"})


@pytest.mark.asyncio
async def test_chroma_index_embeds_query_once_through_cache():
    """Both index calls search by the cached vector: one embedding per query."""
    cache = SimilarityCache(CacheConfig())
    calls = []

    async def embed(text):
        calls.append(text)
        return [0.1, 0.2]

    async def embed_query(text):
        return await cache.get_or_compute_embedding(text, embed)

    vectorstore = MagicMock()
    vectorstore.asimilarity_search_by_vector = AsyncMock(return_value=["doc"])
    vectorstore.similarity_search_by_vector_with_relevance_scores.return_value = [("doc", 0.25)]
    vectorstore._select_relevance_score_fn.return_value = lambda distance: 1.0 - distance
    index = ChromaIndex(vectorstore, embed_fn=embed_query)

    assert await index.retrieve_top_k("q", 3, {"doc_id": "d1"}) == ["doc"]
    assert await index.score_top_k("q", 3, {"doc_id": "d1"}) == [("doc", 0.75)]
    assert calls == ["q"]
    vectorstore.asimilarity_search_by_vector.assert_awaited_once_with(
        [0.1, 0.2], k=3, filter={"doc_id": "d1"}
    )
    vectorstore.asimilarity_search.assert_not_called()


# ============================================================================
# LIFECYCLE
# ============================================================================


@pytest.mark.asyncio
async def test_init_runtime_wires_shared_components():
    handle = await init_runtime(
        Settings(cache_persist=False),
        embedder=fake_embed,
        index=FakeIndex(),
        generator=FakeGenerator(),
    )

    assert handle.pipeline.cache is handle.cache
    assert handle.retriever.cache is handle.cache
    assert handle.retriever.batcher is handle.retrieval_batcher
    assert handle.pipeline.generation_batcher is handle.generation_batcher
    assert handle.retrieval_batcher is not handle.generation_batcher
    assert handle.searcher.rate_fn is None


@pytest.mark.asyncio
async def test_init_runtime_rerank_uses_generator_rating():
    generator = FakeGenerator()
    handle = await init_runtime(
        Settings(cache_persist=False, rerank_enabled=True),
        embedder=fake_embed,
        index=FakeIndex(),
        generator=generator,
    )

    assert handle.retriever.rerank is True
    assert handle.searcher.rate_fn == generator.rate


@pytest.mark.asyncio
async def test_shutdown_flushes_persistent_cache(tmp_path):
    path = tmp_path / "cache.json"
    handle = await init_runtime(
        Settings(cache_persist=True),
        embedder=fake_embed,
        index=FakeIndex(),
        generator=FakeGenerator(),
        cache_path=path,
    )

    await shutdown_runtime(handle)

    assert path.exists()
