"""
Heuristic hallucination detection (no second LLM call).

Checks run on the generated answer against the context it was given:
1. Token divergence: share of answer tokens absent from the context
   (confidence = 1 - |answer ∩ context| / |answer|)
2. Unsupported definitive claims: absolute wording ("always", "must",
   "never"...) or attribution wording ("states that", "confirms that")
   whose surrounding text (±50 chars) does not appear in the context
3. Inconsistent dates: dates in the answer that never appear in the context

An answer is flagged when divergence exceeds the threshold OR either
heuristic fires.

Citation markers ([Source N], [citation]) are stripped from the answer first:
they are not claims and never appear in the raw context.

This is a guardrail, not a proof: expect false positives and negatives.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .response_validator import strip_citation_markers

logger = logging.getLogger(__name__)

_DEFINITIVE_PATTERNS = (
    re.compile(r"\b(?:definitely|absolutely|always|never|must|all|none)\b", re.IGNORECASE),
    re.compile(r"\b(?:according to|states that|confirms that)\b", re.IGNORECASE),
)
_DATE_RE = re.compile(r"\b\d{4}[-/]\d{1,2}[-/]\d{1,2}\b|\b\d{1,2}[-/]\d{1,2}[-/]\d{4}\b")
_WS_RE = re.compile(r"\s+")

_CLAIM_WINDOW_CHARS = 50


@dataclass
class HallucinationCheck:
    """Outcome of a hallucination check."""

    is_hallucination: bool
    confidence: float
    reason: str | None = None
    unsupported_claims: list[str] = field(default_factory=list)
    unsupported_dates: list[str] = field(default_factory=list)


def _fold(text: str) -> str:
    return _WS_RE.sub(" ", text).strip().lower()


def token_divergence(response: str, context: str) -> float:
    """1 - share of distinct response tokens found in the context."""
    response_tokens = set(response.lower().split())
    if not response_tokens:
        return 1.0
    context_tokens = set(context.lower().split())
    overlap = len(response_tokens & context_tokens)
    return 1 - overlap / len(response_tokens)


def find_unsupported_claims(response: str, context: str) -> list[str]:
    """Text windows around definitive wording that the context doesn't contain."""
    folded_response = _fold(response)
    folded_context = _fold(context)
    unsupported: list[str] = []

    for pattern in _DEFINITIVE_PATTERNS:
        for match in pattern.finditer(folded_response):
            start = max(0, match.start() - _CLAIM_WINDOW_CHARS)
            end = min(len(folded_response), match.start() + _CLAIM_WINDOW_CHARS)
            window = folded_response[start:end].strip()
            if window not in folded_context:
                unsupported.append(window)

    return unsupported


def find_unsupported_dates(response: str, context: str) -> list[str]:
    """Dates in the response that don't appear among the context's dates."""
    context_dates = set(_DATE_RE.findall(context))
    seen: list[str] = []
    for date in _DATE_RE.findall(response):
        if date not in context_dates and date not in seen:
            seen.append(date)
    return seen


class HallucinationDetector:
    """Flag answers that assert content absent from the supplied context."""

    def __init__(self, threshold: float = 0.85):
        self.threshold = threshold

    def detect_hallucination(self, response: str, context: str) -> HallucinationCheck:
        """
        Score `response` against `context`.

        Returns:
            HallucinationCheck; `reason` lists the conditions that fired,
            comma-joined
        """
        claims_text = strip_citation_markers(response)
        confidence = token_divergence(claims_text, context)
        claims = find_unsupported_claims(claims_text, context)
        dates = find_unsupported_dates(claims_text, context)

        reasons: list[str] = []
        if confidence > self.threshold:
            reasons.append(f"Low context overlap ({confidence * 100:.1f}% divergence)")
        if claims:
            reasons.append("Contains unsupported definitive claims")
        if dates:
            reasons.append(f"Inconsistent dates: {', '.join(dates)} not present in context")

        if not reasons:
            return HallucinationCheck(is_hallucination=False, confidence=confidence)

        logger.warning(
            "Hallucination detected",
            extra={
                "confidence": round(confidence, 3),
                "unsupported_claims": len(claims),
                "unsupported_dates": len(dates),
            },
        )
        return HallucinationCheck(
            is_hallucination=True,
            confidence=confidence,
            reason=", ".join(reasons),
            unsupported_claims=claims,
            unsupported_dates=dates,
        )
