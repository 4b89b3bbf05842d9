"""
Strict decoding of LLM text into typed values.

Design decisions:
- Schema-validated (pydantic), never regex-extracted from free text:
  a reply is either exactly the expected shape or it is rejected
- Tagged result (Ok | Err) instead of raising: parse failures never cross a
  component boundary as raw exceptions
- Err keeps the raw text so the caller can log what the model actually said

Accepted relevance replies:
    "0.8"            bare number
    '{"score": 0.8}' JSON object
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError

T = TypeVar("T")

_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$")


@dataclass(frozen=True)
class ParseError:
    """Why a reply could not be decoded, with the raw reply attached."""

    message: str
    raw: str


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: ParseError


DecodeResult = Union[Ok[T], Err]


class RelevanceRating(BaseModel):
    """Relevance of one document to a query, as rated by the LLM."""

    score: float = Field(..., ge=0.0, le=1.0)


def decode_relevance(raw: Any) -> DecodeResult[float]:
    """
    Decode an LLM relevance rating in [0, 1].

    Args:
        raw: Model output (expected to be a string)

    Returns:
        Ok(score) or Err(ParseError)
    """
    if not isinstance(raw, str):
        return Err(ParseError(f"Expected text, got {type(raw).__name__}", repr(raw)))

    text = raw.strip()
    try:
        if text.startswith("{"):
            rating = RelevanceRating.model_validate_json(text)
        elif _NUMBER_RE.match(text):
            rating = RelevanceRating(score=float(text))
        else:
            return Err(ParseError("Reply is not a number or a JSON object", raw))
    except ValidationError as e:
        return Err(ParseError(f"Invalid relevance rating: {e.error_count()} error(s)", raw))

    return Ok(rating.score)


def message_text(content: Any) -> Any:
    """
    Flatten LangChain message content.

    Content is either a string or a list of parts (strings or
    {"type": "text", "text": ...} dicts). Other shapes are returned unchanged
    so that decoding can reject them.
    """
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return content


def decode_answer(raw: Any) -> DecodeResult[str]:
    """Decode a generated answer: must be a non-empty string."""
    text = message_text(raw)
    if not isinstance(text, str):
        return Err(ParseError(f"Expected text, got {type(text).__name__}", repr(raw)))
    text = text.strip()
    if not text:
        return Err(ParseError("Empty answer", ""))
    return Ok(text)
