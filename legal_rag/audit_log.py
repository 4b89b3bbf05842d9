"""
Audit logging with strict allowlist policy.

CRITICAL: This module enforces a strict allowlist policy for logging.
We NEVER log any content that could contain sensitive information.

Allowlist (what we log):
- request_id: Unique identifier for request tracing
- timestamp: When the event occurred
- session_id: Caller-provided session identifier
- doc_id filter: Document identifier (not content)
- source_count: Number of sources backing the answer
- latency_ms: Response time
- model: LLM model used
- verdict: "answer", "refusal" or "error"
- error_code: Stable error codes from errors.py (not messages)
- confidence: Hallucination divergence score (numeric only)

Blocklist (NEVER log):
- questions / prompts / history
- document content / snippets
- LLM responses
- hallucination reasons (they quote response dates)

Design decisions:
- Separate audit logger from application logger
- Structured JSON lines for machine parsing
- File rotation to prevent unbounded growth
- Explicit function interface to prevent accidental content logging
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Literal

from .settings import DATA_DIR

AUDIT_LOG_PATH = DATA_DIR / "audit.jsonl"

# Verdict used for each rejecting error code; anything else is an "error"
_REFUSAL_CODES = {"INVALID_QUESTION", "NO_CONTEXT", "HALLUCINATION", "INVALID_CITATION"}


@dataclass(frozen=True)
class AuditEvent:
    """
    Structured audit event with allowlist-only fields.

    All fields are either identifiers, numeric values, or controlled enums.
    No free-text content is allowed.
    """

    event_type: Literal["query", "refusal", "error"]
    request_id: str
    timestamp: str
    session_id: str = ""
    doc_id: str = ""
    source_count: int = 0
    latency_ms: int = 0
    model: str = ""
    verdict: Literal["answer", "refusal", "error", ""] = ""
    error_code: str = ""
    confidence: float = 0.0

    def to_json(self) -> str:
        """Serialize to JSON line."""
        return json.dumps(asdict(self), ensure_ascii=False)


def _get_audit_logger() -> logging.Logger:
    """
    Get or create the audit logger with file rotation.

    Separate from application logging so audit events are captured
    even if app logging is reconfigured.
    """
    logger = logging.getLogger("legal_rag.audit")

    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    logger.propagate = False

    AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)

    # 10MB max, keep 5 backups
    handler = RotatingFileHandler(
        AUDIT_LOG_PATH,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)

    return logger


def generate_request_id() -> str:
    """Generate a unique request ID for tracing."""
    return uuid.uuid4().hex[:16]


def utcnow_iso() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def log_answer(
    request_id: str,
    session_id: str,
    doc_id: str,
    source_count: int,
    latency_ms: int,
    model: str,
) -> None:
    """
    Log a validated answer.

    Note: We deliberately do NOT accept question or answer text.
    """
    event = AuditEvent(
        event_type="query",
        request_id=request_id,
        timestamp=utcnow_iso(),
        session_id=session_id,
        doc_id=doc_id,
        source_count=source_count,
        latency_ms=latency_ms,
        model=model,
        verdict="answer",
    )
    _get_audit_logger().info(event.to_json())


def log_rejection(
    request_id: str,
    session_id: str,
    doc_id: str,
    error_code: str,
    latency_ms: int,
    model: str,
    confidence: float = 0.0,
) -> None:
    """
    Log a rejected request: refusal for validation failures, error otherwise.

    Note: We log error_code, not the error message (which could contain user input).
    """
    refused = error_code in _REFUSAL_CODES
    event = AuditEvent(
        event_type="refusal" if refused else "error",
        request_id=request_id,
        timestamp=utcnow_iso(),
        session_id=session_id,
        doc_id=doc_id,
        latency_ms=latency_ms,
        model=model,
        verdict="refusal" if refused else "error",
        error_code=error_code,
        confidence=confidence,
    )
    _get_audit_logger().info(event.to_json())


class RequestTimer:
    """Context manager for timing requests."""

    def __init__(self):
        self.start_time: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self) -> RequestTimer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed_ms = int((time.perf_counter() - self.start_time) * 1000)
