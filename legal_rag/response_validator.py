"""
Citation validation for generated answers.

An answer passes only if:
1. it carries at least one explicit citation marker ([Source N] or [citation]),
   and every [Source N] points to an existing source
2. it is grounded in the context, according to the configured policy

Grounding policies:
- "strict": the full answer text appears verbatim in the context.
  The citation marker must appear in the context too, so nearly every
  generated answer is rejected.
- "normalized" (default): the answer, with citation markers removed and
  case/whitespace folded, appears in the equally folded context.
- "overlap": every sentence shares at least `min_overlap_words` non-stopword
  words with the context (or all of its words, for shorter sentences).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

CitationPolicy = Literal["strict", "normalized", "overlap"]

_MARKER_RE = re.compile(r"\[(?:citation|source\s+(\d+))\]", re.IGNORECASE)
_MARKER_STRIP_RE = re.compile(r"\s*\[(?:citation|source\s+\d+)\]", re.IGNORECASE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[\w'-]+")

_STOPWORDS = {
    "a", "an", "the", "and", "or", "of", "to", "in", "on", "for", "is", "are",
    "be", "by", "with", "as", "at", "this", "that", "it", "its", "from",
}


@dataclass
class CitationCheck:
    """Outcome of citation validation."""

    citations_valid: bool
    reason: str


def strip_citation_markers(text: str) -> str:
    """Remove [Source N] / [citation] markers and the whitespace before them."""
    return _MARKER_STRIP_RE.sub("", text or "")


def _fold(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().lower()


def _content_words(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS}


def check_markers(response: str, max_sources: int | None = None) -> tuple[bool, str]:
    """Check that citation markers exist and point to existing sources."""
    matches = list(_MARKER_RE.finditer(response or ""))
    if not matches:
        return False, "No citation marker"

    if max_sources is not None:
        numbers = [int(m.group(1)) for m in matches if m.group(1) is not None]
        out_of_range = [n for n in numbers if not 1 <= n <= max_sources]
        if out_of_range:
            return False, f"Citation out of range: {out_of_range} (max: {max_sources})"

    return True, f"{len(matches)} citation marker(s)"


class ResponseValidator:
    """Reject answers lacking proper citations or grounding."""

    def __init__(self, policy: CitationPolicy = "normalized", min_overlap_words: int = 3):
        if policy not in ("strict", "normalized", "overlap"):
            raise ValueError(f"Unknown citation policy: {policy}")
        self.policy = policy
        self.min_overlap_words = min_overlap_words

    def validate_citations(
        self, response: str, context: str, max_sources: int | None = None
    ) -> bool:
        """True if `response` is properly cited and grounded in `context`."""
        return self.check_citations(response, context, max_sources).citations_valid

    def check_citations(
        self, response: str, context: str, max_sources: int | None = None
    ) -> CitationCheck:
        """Same as validate_citations, with a reason for logs."""
        ok, reason = check_markers(response, max_sources)
        if not ok:
            return self._reject(reason)

        if self.policy == "strict":
            if response not in context:
                return self._reject("Response not found verbatim in context")
        elif self.policy == "normalized":
            if _fold(strip_citation_markers(response)) not in _fold(context):
                return self._reject("Response not found in context")
        else:
            context_words = _content_words(context)
            for sentence in _SENTENCE_RE.split(strip_citation_markers(response).strip()):
                words = _content_words(sentence)
                if not words:
                    continue
                needed = min(self.min_overlap_words, len(words))
                if len(words & context_words) < needed:
                    return self._reject(
                        f"Sentence shares fewer than {needed} words with context"
                    )

        return CitationCheck(citations_valid=True, reason=reason)

    def _reject(self, reason: str) -> CitationCheck:
        logger.warning(
            "Citation validation failed",
            extra={"policy": self.policy, "reason": reason, "error_code": "INVALID_CITATION"},
        )
        return CitationCheck(citations_valid=False, reason=reason)
