"""Near-duplicate detection within a product line.

Two phases: :func:`find_duplicates` computes ``original_id -> [duplicate_ids]``
without touching its input, then :func:`apply_duplicates` writes the
annotations. Oldest feature wins. Comparison is pairwise, O(n^2) similarity
calls, which is fine for a few hundred features and not much beyond.
"""
from __future__ import annotations

import logging

from prioritizer.schemas import FeatureRequest
from prioritizer.text import joined_keywords, similarity
from prioritizer.utils import parse_timestamp

log = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6


def find_duplicates(
    features: list[FeatureRequest],
    threshold: float = DEFAULT_THRESHOLD,
) -> dict[str, list[str]]:
    ordered = sorted(features, key=lambda f: parse_timestamp(f.created_at))
    keywords = {f.id: joined_keywords(f.title, f.description) for f in ordered}

    duplicate_ids: set[str] = set()
    mapping: dict[str, list[str]] = {}
    for i, original in enumerate(ordered):
        if original.id in duplicate_ids:
            continue
        original_kw = keywords[original.id]
        if not original_kw:
            continue
        for other in ordered[i + 1:]:
            if other.id in duplicate_ids or other.product != original.product:
                continue
            other_kw = keywords[other.id]
            if not other_kw:
                continue
            if similarity(original_kw, other_kw) >= threshold:
                duplicate_ids.add(other.id)
                mapping.setdefault(original.id, []).append(other.id)
    return mapping


def apply_duplicates(features: list[FeatureRequest], mapping: dict[str, list[str]]) -> None:
    by_id = {f.id: f for f in features}
    for original_id, dup_ids in mapping.items():
        original = by_id[original_id]
        original.duplicates = list(dup_ids)
        for dup_id in dup_ids:
            dup = by_id[dup_id]
            dup.is_duplicate = True
            dup.duplicate_of = original.id
            dup.duplicate_of_identifier = original.identifier


def mark_duplicates(features: list[FeatureRequest], threshold: float = DEFAULT_THRESHOLD) -> dict[str, list[str]]:
    mapping = find_duplicates(features, threshold)
    apply_duplicates(features, mapping)
    count = sum(len(ids) for ids in mapping.values())
    if count:
        log.info("Detected %d duplicate features", count)
    return mapping
