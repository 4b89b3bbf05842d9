"""
Legal RAG orchestration core.

Modules:
- settings: Centralized configuration
- errors: Typed pipeline errors
- cache: Similarity cache for embeddings and retrievals
- cache_store: JSON-file durable store for the cache
- batcher: Adaptive batching
- hybrid_search: Vector + BM25 ranking, optional LLM rerank
- decode: Strict decoding of LLM output
- retriever: Cache-checked, batched retrieval
- hallucination: Heuristic hallucination detection
- response_validator: Citation validation
- pipeline: Request orchestrator
- runtime: LangChain adapters and lifecycle
- rag: Public facade
- audit_log: Allowlist audit logging
- security: Input sanitization
- logging_config: Logging setup
"""
