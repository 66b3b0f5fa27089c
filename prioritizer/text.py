"""Keyword extraction and set similarity used for every fuzzy match in the pipeline."""
from __future__ import annotations

import re
from collections.abc import Iterable

STOPWORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "to", "of", "in", "for",
    "on", "with", "at", "by", "from", "as", "into", "through", "during",
    "before", "after", "above", "below", "between", "under", "again",
    "further", "then", "once", "here", "there", "when", "where", "why",
    "how", "all", "each", "few", "more", "most", "other", "some", "such",
    "no", "nor", "not", "only", "own", "same", "so", "than", "too", "very",
    "just", "and", "but", "or", "if", "because", "until", "while", "about",
    # tracker filler
    "feature", "request", "add", "support", "need", "want", "like", "please",
    "it", "this", "that", "these", "those", "i", "we", "you", "they",
})

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize(text: str | None) -> str:
    """Lowercase, turn punctuation into spaces, collapse whitespace."""
    if not text:
        return ""
    lowered = _PUNCT_RE.sub(" ", text.lower())
    return _SPACE_RE.sub(" ", lowered).strip()


def extract_keywords(text: str | None) -> set[str]:
    return {
        word for word in normalize(text).split(" ")
        if len(word) > 2 and word not in STOPWORDS
    }


def joined_keywords(*parts: str | None) -> set[str]:
    """Keywords of several text fields concatenated with a space."""
    return extract_keywords(" ".join(p or "" for p in parts))


def similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard index of two token collections; 0.0 when either is empty."""
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)
