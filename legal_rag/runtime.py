"""
RAG Runtime - LangChain adapters and lifecycle.

This module provides concrete implementations of the ports defined in the
core modules (EmbedFn, VectorIndex, Generator, CacheStore) and wires
everything together. The core can be tested without these dependencies.

Design decisions:

Why LangChain?
- Unified async interface for embeddings, vector store and chat models
- Easy to swap providers (OpenAI -> Anthropic -> local)

Why Chroma?
- Persistent storage out of the box
- Metadata filtering support ({"doc_id": ...})
- Relevance scores normalized to [0, 1]

Why an explicit handle instead of module singletons?
- init_runtime() builds the cache, both batchers, the searcher, the
  retriever and the pipeline once, and injects them explicitly
- shutdown_runtime() flushes the durable cache store
- Tests build their own handle with fake adapters

Why temperature=0?
- Deterministic outputs for legal context
- Reproducible answers
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from langchain_chroma import Chroma
from langchain_core.documents import Document
from langchain_openai import ChatOpenAI
from langchain_voyageai import VoyageAIEmbeddings
from tenacity import retry, stop_after_attempt, wait_exponential

from .batcher import AdaptiveBatcher
from .cache import CacheConfig, EmbedFn, SimilarityCache
from .cache_store import JsonFileCacheStore
from .decode import message_text
from .hallucination import HallucinationDetector
from .hybrid_search import HybridConfig, HybridSearcher
from .pipeline import Generator, Pipeline, PipelineConfig
from .response_validator import ResponseValidator
from .retriever import Retriever
from .settings import CACHE_PATH, CHROMA_DIR, Settings, settings as default_settings

logger = logging.getLogger(__name__)


# ============================================================================
# PROVIDER ADAPTERS
# ============================================================================


class VoyageEmbedder:
    """
    Query embeddings through Voyage AI.

    Requires VOYAGE_API_KEY environment variable.
    """

    def __init__(self, model: str, embeddings: Any | None = None):
        self.model = model
        self.embeddings = embeddings or VoyageAIEmbeddings(
            model=model,
            voyage_api_key=None,  # Uses VOYAGE_API_KEY env var
        )

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(min=1, max=8), reraise=True)
    async def embed(self, text: str) -> list[float]:
        return await self.embeddings.aembed_query(text)

    async def __call__(self, text: str) -> list[float]:
        return await self.embed(text)


class ChromaIndex:
    """
    VectorIndex over a persistent Chroma collection.

    With `embed_fn` (the cache-backed query embedder), both calls search by
    vector, so a query is embedded once for the embedding cache, the document
    hits and their scores. Without it Chroma embeds the query text itself.
    """

    def __init__(self, vectorstore: Chroma, embed_fn: EmbedFn | None = None):
        self.vectorstore = vectorstore
        self.embed_fn = embed_fn

    @classmethod
    def from_settings(
        cls, cfg: Settings, embeddings: Any, embed_fn: EmbedFn | None = None
    ) -> ChromaIndex:
        return cls(
            Chroma(
                collection_name=cfg.rag_collection,
                embedding_function=embeddings,
                persist_directory=str(CHROMA_DIR),
            ),
            embed_fn=embed_fn,
        )

    async def retrieve_top_k(
        self, query: str, k: int, filter: dict[str, Any] | None = None
    ) -> list[Document]:
        if self.embed_fn is None:
            return await self.vectorstore.asimilarity_search(query, k=k, filter=filter)
        vector = await self.embed_fn(query)
        return await self.vectorstore.asimilarity_search_by_vector(vector, k=k, filter=filter)

    async def score_top_k(
        self, query: str, k: int, filter: dict[str, Any] | None = None
    ) -> list[tuple[Document, float]]:
        if self.embed_fn is None:
            return await self.vectorstore.asimilarity_search_with_relevance_scores(
                query, k=k, filter=filter
            )
        vector = await self.embed_fn(query)
        # Chroma returns distances here; map them to [0, 1] relevance like the text search does
        hits = await asyncio.to_thread(
            self.vectorstore.similarity_search_by_vector_with_relevance_scores,
            vector,
            k=k,
            filter=filter,
        )
        relevance = self.vectorstore._select_relevance_score_fn()
        return [(doc, relevance(distance)) for doc, distance in hits]


class OpenAIGenerator:
    """Generator backed by an OpenAI chat model."""

    def __init__(self, model: str, temperature: float = 0.0, llm: Any | None = None):
        self.model = model
        self.temperature = temperature
        self.llm = llm or ChatOpenAI(model=model, temperature=temperature)

    async def generate(self, prompt: str, temperature: float) -> str:
        message = await self.llm.bind(temperature=temperature).ainvoke(prompt)
        return message_text(message.content)

    async def generate_batch(self, prompts: list[str], temperature: float = 0.0) -> list[str]:
        messages = await self.llm.bind(temperature=temperature).abatch(prompts)
        return [message_text(m.content) for m in messages]

    async def rate(self, prompt: str) -> str:
        """Relevance rating call used by the reranker (always temperature 0)."""
        return await self.generate(prompt, 0.0)


# ============================================================================
# CONFIGURATION FACTORIES
# ============================================================================


def make_cache_config(cfg: Settings = default_settings) -> CacheConfig:
    """Create CacheConfig from application settings."""
    return CacheConfig(
        max_size=cfg.cache_max_size,
        ttl_seconds=cfg.cache_ttl_seconds,
        similarity_threshold=cfg.cache_similarity_threshold,
        persist=cfg.cache_persist,
        match_policy="best" if cfg.cache_match_policy == "best" else "first",
    )


def make_hybrid_config(cfg: Settings = default_settings) -> HybridConfig:
    """Create HybridConfig from application settings."""
    return HybridConfig(
        top_k=cfg.rag_top_k,
        vector_weight=cfg.vector_weight,
        keyword_weight=cfg.keyword_weight,
        k1=cfg.bm25_k1,
        b=cfg.bm25_b,
        avg_doc_len=cfg.bm25_avg_doc_len,
        hybrid=cfg.hybrid_search,
    )


def make_pipeline_config(cfg: Settings = default_settings) -> PipelineConfig:
    """Create PipelineConfig from application settings."""
    return PipelineConfig(
        temperature=cfg.generation_temperature,
        max_question_len=cfg.max_question_len,
        max_answer_chars=cfg.max_answer_chars,
        stage_timeout_s=cfg.stage_timeout_seconds or None,
    )


def _make_batcher(cfg: Settings, name: str) -> AdaptiveBatcher:
    return AdaptiveBatcher(
        min_batch_size=cfg.batch_min_size,
        max_batch_size=cfg.batch_max_size,
        target_latency_ms=cfg.batch_target_latency_ms,
        max_latencies=cfg.batch_max_latencies,
        name=name,
    )


# ============================================================================
# LIFECYCLE
# ============================================================================


@dataclass
class RagHandle:
    """Everything built at startup, shared by every request."""

    settings: Settings
    cache: SimilarityCache
    retrieval_batcher: AdaptiveBatcher
    generation_batcher: AdaptiveBatcher
    searcher: HybridSearcher
    retriever: Retriever
    pipeline: Pipeline


async def init_runtime(
    cfg: Settings = default_settings,
    embedder: Any | None = None,
    index: Any | None = None,
    generator: Generator | None = None,
    cache_path: Any = CACHE_PATH,
) -> RagHandle:
    """
    Build the runtime once at startup.

    Args:
        cfg: Application settings
        embedder: Async callable text -> embedding (default: VoyageEmbedder)
        index: VectorIndex (default: ChromaIndex over the Voyage embeddings)
        generator: Generator (default: OpenAIGenerator)
        cache_path: JSON file used when cache persistence is enabled

    Returns:
        RagHandle; pass it to shutdown_runtime() on exit
    """
    if embedder is None:
        embedder = VoyageEmbedder(cfg.voyage_embed_model)
    if generator is None:
        generator = OpenAIGenerator(cfg.openai_chat_model, cfg.generation_temperature)

    cache = await SimilarityCache.open(
        make_cache_config(cfg),
        store=JsonFileCacheStore(cache_path) if cfg.cache_persist else None,
    )

    if index is None:

        async def embed_query(text: str) -> list[float]:
            return await cache.get_or_compute_embedding(text, embedder)

        index = ChromaIndex.from_settings(
            cfg, getattr(embedder, "embeddings", None), embed_fn=embed_query
        )

    retrieval_batcher = _make_batcher(cfg, "retrieval")
    generation_batcher = _make_batcher(cfg, "generation")

    rate_fn = getattr(generator, "rate", None) if cfg.rerank_enabled else None
    searcher = HybridSearcher(index, make_hybrid_config(cfg), rate_fn=rate_fn)
    retriever = Retriever(
        searcher,
        cache,
        retrieval_batcher,
        embed_fn=embedder,
        approximate_match=cfg.approximate_match,
        rerank=cfg.rerank_enabled,
    )
    pipeline = Pipeline(
        retriever,
        generator,
        generation_batcher,
        HallucinationDetector(cfg.hallucination_threshold),
        ResponseValidator(cfg.citation_policy),
        make_pipeline_config(cfg),
        cache=cache,
    )

    logger.info(
        "RAG runtime initialized",
        extra={
            "model": cfg.openai_chat_model,
            "hybrid": cfg.hybrid_search,
            "rerank": cfg.rerank_enabled,
            "cache_persist": cfg.cache_persist,
        },
    )
    return RagHandle(
        settings=cfg,
        cache=cache,
        retrieval_batcher=retrieval_batcher,
        generation_batcher=generation_batcher,
        searcher=searcher,
        retriever=retriever,
        pipeline=pipeline,
    )


async def shutdown_runtime(handle: RagHandle) -> None:
    """Flush the durable cache store."""
    await handle.cache.close()
    logger.info("RAG runtime shut down", extra={"cache_stats": handle.cache.stats()})
