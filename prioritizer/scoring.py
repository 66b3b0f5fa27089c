"""Scoring engine: merge cached AI scores with manual overrides and run a framework.

Pipeline for one feature:

1. factor scores from the cached AI result (preferred provider, else the other);
2. manual overrides laid over them, per factor;
3. the framework's base score;
4. ``raw_final_score = base x tier multiplier``; ``final_score`` is that value
   clamped to 0..10 and rounded to 2 decimals.

Everything here is pure; identical inputs give identical scores.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from prioritizer.frameworks import FRAMEWORK_IDS, FRAMEWORKS, numeric
from prioritizer.products import DEFAULT_TIER_MULTIPLIERS, weights_for_product
from prioritizer.schemas import FeatureRequest, ScoredFeature, StoredAIScore
from prioritizer.utils import clip, round2

log = logging.getLogger(__name__)

MAX_SCORE = 10.0
HIGH_TIERS = ("C1", "C2")

# (factor, threshold, flag)
_FACTOR_FLAGS = (
    ("requestVolume", 8, "high-demand"),
    ("enterpriseReadiness", 8, "enterprise"),
    ("strategicAlignment", 8, "strategic-priority"),
)


def has_ai_score(cached: StoredAIScore | None) -> bool:
    return bool(cached and (cached.openai or cached.anthropic))


def extract_ai_scores(cached: StoredAIScore | None, default_model: str = "anthropic") -> dict[str, Any]:
    """Factor scores from the preferred provider, falling back to the other.

    Numeric scores are kept as floats; the only categorical value kept is a
    MoSCoW category under ``moscow``.
    """
    if cached is None:
        return {}
    if default_model == "openai":
        result = cached.openai or cached.anthropic
    else:
        result = cached.anthropic or cached.openai
    if result is None:
        return {}
    scores: dict[str, Any] = {}
    for suggestion in result.suggestions:
        if suggestion.factor and isinstance(suggestion.score, (int, float)):
            scores[suggestion.factor] = float(suggestion.score)
        elif suggestion.factor == "moscow" and isinstance(suggestion.score, str):
            scores["moscow"] = suggestion.score.lower()
    return scores


def map_score_to_priority(final_score: float) -> int:
    """Tracker priority: 1 urgent, 2 high, 3 normal, 4 low."""
    if final_score >= 8:
        return 1
    if final_score >= 6:
        return 2
    if final_score >= 4:
        return 3
    return 4


def tier_multiplier(tier: str, tier_multipliers: Mapping[str, float] | None = None) -> float:
    multipliers = {**DEFAULT_TIER_MULTIPLIERS, **(tier_multipliers or {})}
    return float(multipliers.get(tier) or 1.0)


def score_feature(
    feature: FeatureRequest,
    framework: str = "weighted",
    cached: StoredAIScore | None = None,
    overrides: Mapping[str, Any] | None = None,
    weights: dict[str, dict[str, float]] | None = None,
    tier_multipliers: Mapping[str, float] | None = None,
    default_model: str = "anthropic",
) -> ScoredFeature:
    """Score one feature.

    Args:
        feature: The correlated feature.
        framework: One of ``FRAMEWORK_IDS``; unknown names fall back to weighted.
        cached: Stored AI result for this feature, if any.
        overrides: Manual factor values; these always win over AI scores.
        weights: Weight tables keyed by product stage (``mature`` / ``new``).
        tier_multipliers: Per customer tier; missing tiers count as 1.0.
        default_model: Provider whose suggestions are preferred.
    """
    if framework not in FRAMEWORKS:
        log.warning("Unknown scoring framework %r, using weighted", framework)
        framework = "weighted"

    scores: dict[str, Any] = {**extract_ai_scores(cached, default_model), **(overrides or {})}
    result = FRAMEWORKS[framework].compute(
        scores, weights_for_product(feature.product, weights), feature.product,
    )

    multiplier = tier_multiplier(feature.customer_tier, tier_multipliers)
    raw_final = round2(result.base_score * multiplier)
    final = round2(clip(raw_final, 0.0, MAX_SCORE))

    flags: list[str] = []
    if not has_ai_score(cached):
        flags.append("pending-ai-score")
    if feature.customer_tier in HIGH_TIERS:
        flags.append("high-tier-customer")
    for factor, threshold, flag in _FACTOR_FLAGS:
        value = numeric(scores, factor)
        if value is not None and value >= threshold:
            flags.append(flag)
    flags.extend(result.flags)

    ai_suggestions = None
    if cached is not None:
        ai_suggestions = {
            name: r for name, r in (("openai", cached.openai), ("anthropic", cached.anthropic)) if r
        }

    return ScoredFeature(
        **feature.model_dump(),
        scores=scores,
        manual_overrides=dict(overrides) if overrides else None,
        ai_suggestions=ai_suggestions,
        base_score=result.base_score,
        multiplier=multiplier,
        raw_final_score=raw_final,
        final_score=final,
        breakdown=result.breakdown,
        flags=flags,
        mapped_priority=map_score_to_priority(final),
        framework=framework,
    )


def score_and_sort_features(
    features: list[FeatureRequest],
    framework: str,
    cached_scores: Mapping[str, StoredAIScore],
    overrides: Mapping[str, Mapping[str, Any]],
    weights: dict[str, dict[str, float]] | None = None,
    tier_multipliers: Mapping[str, float] | None = None,
    default_model: str = "anthropic",
) -> list[ScoredFeature]:
    """Score every feature; AI-scored ones first, then by final score descending.

    The sort is stable, so equal scores keep input order.
    """
    scored = [
        score_feature(
            feature, framework, cached_scores.get(feature.id), overrides.get(feature.id),
            weights, tier_multipliers, default_model,
        )
        for feature in features
    ]
    scored.sort(key=lambda s: ("pending-ai-score" in s.flags, -s.final_score))
    return scored


def compare_frameworks(
    feature: FeatureRequest,
    cached: StoredAIScore | None = None,
    overrides: Mapping[str, Any] | None = None,
    weights: dict[str, dict[str, float]] | None = None,
    tier_multipliers: Mapping[str, float] | None = None,
    default_model: str = "anthropic",
) -> dict[str, dict[str, float]]:
    results = {}
    for framework in FRAMEWORK_IDS:
        s = score_feature(feature, framework, cached, overrides, weights, tier_multipliers, default_model)
        results[framework] = {"base_score": s.base_score, "final_score": s.final_score}
    return results
