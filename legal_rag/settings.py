"""
Centralized configuration for the legal RAG core.

Design decisions:
- Frozen dataclass: immutable after creation, prevents accidental modification
- Environment variables: 12-factor app compliance, easy deployment configuration
- Sensible defaults: works out of the box for development

Key parameters explained:

Hybrid search:
- vector_weight=0.65 / keyword_weight=0.35: dense similarity leads, BM25 keeps
  exact legal terms ("Article L.121-1", "30-day notice") in the ranking
- bm25_k1=1.5, bm25_b=0.75: classic BM25 saturation / length normalization
- bm25_avg_doc_len=500: assumed average chunk length in whitespace tokens

Cache:
- cache_max_size=2000, cache_ttl_seconds=3600: one hour of embeddings and
  retrievals, bounded memory
- cache_similarity_threshold=0.92: a new question reuses cached documents
  only when its embedding is very close to a cached question's embedding
- cache_match_policy="first": first cached query above threshold wins
  (set "best" to pick the most similar one)

Adaptive batching:
- 1..8 items per batch, chasing 750ms per batch over the last 30 batches

Validation:
- hallucination_threshold=0.85: max token divergence before rejecting
- citation_policy="normalized": response must appear in the context once
  citation markers, case and whitespace are folded ("strict" = verbatim,
  "overlap" = per-sentence word overlap)

Deadlines:
- stage_timeout_seconds=30: retrieval and generation each get 30s (0 disables)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
CHROMA_DIR = DATA_DIR / "chroma"
CACHE_PATH = DATA_DIR / "vector_cache.json"

DATA_DIR.mkdir(parents=True, exist_ok=True)
CHROMA_DIR.mkdir(parents=True, exist_ok=True)


def _env_bool(name: str, default: bool) -> bool:
    """Parse boolean from environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Parse float from environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return float(v)


def _env_int(name: str, default: int) -> int:
    """Parse integer from environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return int(v)


@dataclass(frozen=True)
class Settings:
    """
    Application settings.

    All settings can be overridden via environment variables.

    Attributes:
        openai_chat_model: LLM model for answer generation and reranking
        voyage_embed_model: Voyage AI model for query embeddings
        rag_collection: Chroma collection name
        rag_top_k: Number of documents fetched from the vector index
        hybrid_search: Blend BM25 keyword scores into vector ranking
        vector_weight: Weight of normalized vector score
        keyword_weight: Weight of normalized BM25 score
        rerank_enabled: Ask the LLM to rate each retrieved document
        cache_max_size: Max entries per cache map
        cache_ttl_seconds: Entry lifetime
        cache_similarity_threshold: Cosine threshold for approximate hits
        cache_match_policy: "first" or "best" approximate match
        cache_persist: Persist caches to CACHE_PATH across restarts
        approximate_match: Enable embedding-based approximate cache hits
        batch_*: Adaptive batcher bounds and latency target
        hallucination_threshold: Max divergence before rejecting an answer
        citation_policy: "strict", "normalized" or "overlap"
        generation_temperature: Sampling temperature for answers
        stage_timeout_seconds: Per-stage deadline (0 disables)
        max_question_len: Maximum question length in characters
        max_answer_chars: Maximum answer length (anti-exfiltration)
    """

    # Providers
    openai_chat_model: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4.1-mini")
    voyage_embed_model: str = os.getenv("VOYAGE_EMBED_MODEL", "voyage-3-large")
    rag_collection: str = os.getenv("RAG_COLLECTION", "legal_docs")

    # Retrieval
    rag_top_k: int = _env_int("RAG_TOP_K", 5)
    hybrid_search: bool = _env_bool("HYBRID_SEARCH", True)
    vector_weight: float = _env_float("VECTOR_WEIGHT", 0.65)
    keyword_weight: float = _env_float("KEYWORD_WEIGHT", 0.35)
    bm25_k1: float = _env_float("BM25_K1", 1.5)
    bm25_b: float = _env_float("BM25_B", 0.75)
    bm25_avg_doc_len: float = _env_float("BM25_AVG_DOC_LEN", 500.0)
    rerank_enabled: bool = _env_bool("RERANK_ENABLED", False)

    # Cache
    cache_max_size: int = _env_int("CACHE_MAX_SIZE", 2000)
    cache_ttl_seconds: float = _env_float("CACHE_TTL_SECONDS", 3600.0)
    cache_similarity_threshold: float = _env_float("CACHE_SIMILARITY_THRESHOLD", 0.92)
    cache_match_policy: str = os.getenv("CACHE_MATCH_POLICY", "first")
    cache_persist: bool = _env_bool("CACHE_PERSIST", False)
    approximate_match: bool = _env_bool("APPROXIMATE_MATCH", True)

    # Adaptive batching
    batch_min_size: int = _env_int("BATCH_MIN_SIZE", 1)
    batch_max_size: int = _env_int("BATCH_MAX_SIZE", 8)
    batch_target_latency_ms: float = _env_float("BATCH_TARGET_LATENCY_MS", 750.0)
    batch_max_latencies: int = _env_int("BATCH_MAX_LATENCIES", 30)

    # Validation
    hallucination_threshold: float = _env_float("HALLUCINATION_THRESHOLD", 0.85)
    citation_policy: str = os.getenv("CITATION_POLICY", "normalized")

    # Generation
    # temperature=0 keeps answers reproducible for legal review
    generation_temperature: float = _env_float("GENERATION_TEMPERATURE", 0.0)

    # Deadlines
    stage_timeout_seconds: float = _env_float("STAGE_TIMEOUT_SECONDS", 30.0)

    # Limits
    max_question_len: int = _env_int("MAX_QUESTION_LEN", 2000)
    max_answer_chars: int = _env_int("MAX_ANSWER_CHARS", 4000)


settings = Settings()
