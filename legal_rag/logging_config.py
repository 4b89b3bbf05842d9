"""
Logging configuration for the RAG core.

Design decisions:
- Basic format: Timestamp | Level | Logger | Message
- stdout output: Compatible with container logging (Docker, K8s)
- Provider SDK loggers (httpx, openai, chromadb) capped at WARNING so
  per-request HTTP lines don't drown pipeline events
- Idempotent setup: Safe to call multiple times

SECURITY:
- Application logs must NOT contain questions, answers or document content
- Pipeline modules log sizes, scores, latencies and error codes only
- Use audit_log.py for structured audit events

Usage:
    from legal_rag.logging_config import setup_logging
    setup_logging()  # Call once at startup
"""

from __future__ import annotations

import logging
import sys

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "chromadb", "urllib3")


def setup_logging(level: int = logging.INFO, provider_level: int = logging.WARNING) -> None:
    """
    Configure the root logger once and quiet provider SDK loggers.

    Args:
        level: Level for application loggers
        provider_level: Level applied to HTTP / vendor SDK loggers
    """
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(provider_level)

    root = logging.getLogger()
    if root.handlers:
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
