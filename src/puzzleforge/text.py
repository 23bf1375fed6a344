"""Lexical helpers shared by extraction, ranking and the diversity pipeline."""

from __future__ import annotations

import re
from typing import AbstractSet, Iterable

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
        "her", "was", "one", "our", "out", "has", "have", "been", "were", "they",
        "this", "that", "with", "from", "will", "would", "there", "their", "what",
        "about", "which", "when", "make", "like", "just", "over", "such", "into",
        "than", "them", "some", "could", "very", "more", "also", "how", "its",
        "being", "only", "other", "most", "then", "should", "these", "here",
    }
)

_NON_WORD = re.compile(r"[^a-z0-9]+")
_ENTITY = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")


def normalize_text(text: str) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""

    return _NON_WORD.sub(" ", (text or "").lower()).strip()


def tokenize(text: str) -> list[str]:
    normalized = normalize_text(text)
    return normalized.split() if normalized else []


def content_words(text: str, *, min_length: int = 4) -> list[str]:
    """Tokens of at least ``min_length`` characters that are not stop words."""

    return [token for token in tokenize(text) if len(token) >= min_length and token not in STOP_WORDS]


def capitalized_phrases(text: str) -> list[str]:
    return _ENTITY.findall(text or "")


def char_ngrams(text: str, n: int = 3) -> set[str]:
    normalized = normalize_text(text)
    if not normalized:
        return set()
    if len(normalized) < n:
        return {normalized}
    return {normalized[i : i + n] for i in range(len(normalized) - n + 1)}


def jaccard(left: AbstractSet[str], right: AbstractSet[str]) -> float:
    if not left and not right:
        return 0.0
    return len(left & right) / len(left | right)


def unique(items: Iterable[str]) -> list[str]:
    """Order-preserving de-duplication ignoring case and blank entries."""

    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        value = (item or "").strip()
        key = value.lower()
        if not value or key in seen:
            continue
        seen.add(key)
        ordered.append(value)
    return ordered


__all__ = [
    "STOP_WORDS",
    "capitalized_phrases",
    "char_ngrams",
    "content_words",
    "jaccard",
    "normalize_text",
    "tokenize",
    "unique",
]
