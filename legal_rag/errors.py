"""
Typed errors raised by the RAG core.

Design decisions:
- One base class (RagError) so callers can catch every pipeline failure at once
- Stable `code` per class: used as the audit-log error_code (never the message,
  which could contain user content)
- Fail closed: retrieval, generation and validation failures abort the request,
  the core never returns an unverified answer

Rate limiting:
- Provider rate limits surface as RateLimitedError (a GenerationError sub-case)
- The core does NOT retry; the caller decides on its own backoff
"""

from __future__ import annotations

from typing import Any


class RagError(Exception):
    """Base exception for all RAG pipeline errors."""

    code = "RAG_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidQuestionError(RagError):
    """Question is empty or was rejected by input sanitization."""

    code = "INVALID_QUESTION"


class RetrievalError(RagError):
    """Vector-index or embedding call failed after a cache miss."""

    code = "RETRIEVAL_ERROR"


class NoContextError(RagError):
    """Retrieval succeeded but returned no documents to ground an answer."""

    code = "NO_CONTEXT"


class GenerationError(RagError):
    """LLM generation call failed or returned an unusable response."""

    code = "GENERATION_ERROR"
    rate_limited = False


class RateLimitedError(GenerationError):
    """Provider rejected the generation call because of rate limiting."""

    code = "RATE_LIMITED"
    rate_limited = True


class HallucinationError(RagError):
    """Generated answer contains content unsupported by the context."""

    code = "HALLUCINATION"

    def __init__(self, reason: str, confidence: float = 0.0):
        super().__init__(
            f"Potential hallucination detected: {reason}",
            {"reason": reason, "confidence": confidence},
        )
        self.reason = reason
        self.confidence = confidence


class CitationError(RagError):
    """Generated answer has missing or invalid citations."""

    code = "INVALID_CITATION"


class PipelineTimeoutError(RagError, TimeoutError):
    """A pipeline stage exceeded its deadline."""

    code = "TIMEOUT"

    def __init__(self, stage: str, timeout_s: float):
        super().__init__(
            f"Stage '{stage}' exceeded {timeout_s:.1f}s",
            {"stage": stage, "timeout_s": timeout_s},
        )
        self.stage = stage
        self.timeout_s = timeout_s


def is_rate_limit_error(exc: BaseException) -> bool:
    """
    Detect provider rate-limit errors without importing vendor SDKs.

    Matches HTTP 429 status codes (openai/httpx style `status_code`),
    RateLimitError class names, and "rate limit" / "rate_limit" / "429" in the message.
    """
    if getattr(exc, "status_code", None) == 429:
        return True
    if "ratelimit" in type(exc).__name__.lower():
        return True
    msg = str(exc).lower()
    return "rate limit" in msg or "rate_limit" in msg or "429" in msg


def classify_generation_error(exc: BaseException) -> GenerationError:
    """Map a provider exception to GenerationError or its rate-limited sub-case."""
    if isinstance(exc, GenerationError):
        return exc
    if is_rate_limit_error(exc):
        return RateLimitedError(
            "Generation provider is rate limiting requests",
            {"provider_error": type(exc).__name__},
        )
    return GenerationError(
        "Generation call failed",
        {"provider_error": type(exc).__name__},
    )
