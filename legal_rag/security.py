"""
Input sanitization and prompt injection protection.

Design decisions:
- Blocklist approach: Simple, transparent, easy to extend
- Control character removal: Prevents hidden instructions
- Length limiting: Prevents token stuffing attacks
- Bilingual patterns: English + French coverage (documents are often French)

Known limitations:
- Blocklist can be bypassed with synonyms, typos, encoding tricks
- No ML-based detection

SECURITY layers:
- Layer 1: this input sanitization
- Layer 2: prompt that treats all sources as untrusted (pipeline.py)
- Layer 3: hallucination detection (hallucination.py)
- Layer 4: citation validation (response_validator.py)
"""

from __future__ import annotations

import re

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_FORBIDDEN = [
    "ignore previous",
    "disregard previous",
    "forget the instructions",
    "ignore all",
    "ignore above",
    "disregard above",
    "system prompt",
    "system:",
    "new instructions",
    "override",
    "oublie les instructions",
    "ignore les instructions",
    "ignore tout",
    "nouvelles instructions",
]


def sanitize_question(q: str, max_len: int = 2000) -> str:
    """
    Sanitize user input for basic prompt injection protection.

    Args:
        q: User's question
        max_len: Maximum allowed length

    Returns:
        Sanitized question, or empty string if injection detected
    """
    q = _CONTROL_CHARS.sub("", q or "").strip()
    q = q[:max_len]

    low = q.lower()
    if any(p in low for p in _FORBIDDEN):
        return ""

    return q


def sanitize_history(
    history: list[dict[str, str]] | None, max_len: int = 2000
) -> list[dict[str, str]]:
    """
    Keep only well-formed user/assistant turns, with control chars removed.

    Turns that trip the injection blocklist are dropped rather than
    rejecting the whole request.
    """
    clean: list[dict[str, str]] = []
    for msg in history or []:
        role = msg.get("role")
        if role not in ("user", "assistant"):
            continue
        content = sanitize_question(str(msg.get("content", "")), max_len)
        if content:
            clean.append({"role": role, "content": content})
    return clean
