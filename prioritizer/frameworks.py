"""Scoring frameworks: each turns merged factor scores into a base score.

Every framework returns a :class:`FrameworkResult`; the tier multiplier, the
0..10 clamp and flags common to all frameworks are applied by
:mod:`prioritizer.scoring`.
"""
from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from prioritizer.products import stage_factors
from prioritizer.schemas import BreakdownItem
from prioritizer.utils import round2

FRAMEWORK_IDS = ("weighted", "rice", "ice", "value-effort", "moscow")

MOSCOW_SCORES = {"must": 10, "should": 7, "could": 4, "wont": 1}


@dataclass
class FrameworkResult:
    base_score: float
    breakdown: list[BreakdownItem] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)


def numeric(scores: Mapping[str, Any], key: str) -> float | None:
    """Return a factor's numeric value, or None if absent or categorical."""
    value = scores.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _round1_capped(raw: float) -> float:
    return min(math.floor(raw * 10 + 0.5) / 10, 10.0)


# ---------------------------------------------------------------------------
# Frameworks
# ---------------------------------------------------------------------------


def weighted(scores: Mapping[str, Any], weights: Mapping[str, float], product: str) -> FrameworkResult:
    """Sum of ``weight x score`` over the product stage's factors.

    Factors with weight 0 or no score are left out entirely. Effort counts
    inverted (``10 - effort``).
    """
    breakdown: list[BreakdownItem] = []
    total = 0.0
    for key, label in stage_factors(product):
        weight = float(weights.get(key, 0.0) or 0.0)
        score = numeric(scores, key)
        if weight <= 0 or score is None:
            continue
        if key == "effort":
            score = 10 - score
        contribution = weight * score
        breakdown.append(BreakdownItem(
            factor=key, label=label, weight=weight, score=score, contribution=round2(contribution),
        ))
        total += contribution
    return FrameworkResult(base_score=round2(total), breakdown=breakdown)


def rice(scores: Mapping[str, Any], weights: Mapping[str, float], product: str) -> FrameworkResult:
    reach = numeric(scores, "reach")
    impact = numeric(scores, "impact")
    confidence = numeric(scores, "confidence")
    effort = numeric(scores, "effort")
    reach = 5.0 if reach is None else reach
    impact = 1.0 if impact is None else impact
    confidence = 0.8 if confidence is None else confidence
    effort = max(5.0 if effort is None else effort, 1.0)
    return FrameworkResult(base_score=_round1_capped(reach * impact * confidence / effort))


def ice(scores: Mapping[str, Any], weights: Mapping[str, float], product: str) -> FrameworkResult:
    impact = numeric(scores, "impact")
    confidence = numeric(scores, "confidence")
    ease = numeric(scores, "ease")
    effort = numeric(scores, "effort")
    impact = 5.0 if impact is None else impact
    # confidence is stored on the 0..1 RICE scale
    confidence = 5.0 if confidence is None else confidence * 10
    if ease is None:
        ease = 11 - effort if effort is not None else 5.0
    return FrameworkResult(base_score=_round1_capped(impact * confidence * ease / 100))


def quadrant(value: float, effort: float) -> str:
    high_value, high_effort = value > 5, effort > 5
    if high_value and not high_effort:
        return "quick-wins"
    if high_value:
        return "big-bets"
    if not high_effort:
        return "fill-ins"
    return "time-sinks"


def value_effort(scores: Mapping[str, Any], weights: Mapping[str, float], product: str) -> FrameworkResult:
    value = numeric(scores, "value")
    effort = numeric(scores, "effort")
    value = 5.0 if value is None else value
    effort = 5.0 if effort is None else effort
    return FrameworkResult(
        base_score=_round1_capped(value / max(effort, 1.0) * 2),
        flags=[quadrant(value, effort)],
    )


def infer_moscow(scores: Mapping[str, Any]) -> str:
    """Explicit ``moscow`` category, else inferred from the average of value-like factors."""
    explicit = scores.get("moscow")
    if isinstance(explicit, str) and explicit in MOSCOW_SCORES:
        return explicit

    values = [
        v for v in (numeric(scores, k) for k in (
            "revenueImpact", "enterpriseReadiness", "strategicAlignment", "capabilityGap", "value",
        ))
        if v is not None
    ]
    impact = numeric(scores, "impact")
    if impact is not None:
        # RICE impact runs 0.25..3
        values.append(impact * 3.33 if impact <= 3 else impact)

    if not values:
        return "could"
    avg = sum(values) / len(values)
    if avg >= 8:
        return "must"
    if avg >= 6:
        return "should"
    if avg >= 4:
        return "could"
    return "wont"


def moscow(scores: Mapping[str, Any], weights: Mapping[str, float], product: str) -> FrameworkResult:
    category = infer_moscow(scores)
    return FrameworkResult(base_score=float(MOSCOW_SCORES[category]), flags=[category])


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FrameworkInfo:
    id: str
    name: str
    description: str
    formula: str
    best_for: str
    compute: Callable[[Mapping[str, Any], Mapping[str, float], str], FrameworkResult]
    factors: tuple[tuple[str, str, str], ...] = ()  # (key, label, scale)


FRAMEWORKS: dict[str, FrameworkInfo] = {
    "weighted": FrameworkInfo(
        id="weighted",
        name="Weighted Scoring",
        description="Multi-factor analysis with customizable weights",
        formula="Σ(Weight × Score)",
        best_for="Balanced prioritization across business, technical and strategic factors",
        compute=weighted,
    ),
    "rice": FrameworkInfo(
        id="rice",
        name="RICE",
        description="Reach, impact, confidence over effort",
        formula="(Reach × Impact × Confidence) / Effort",
        best_for="Teams with good data who want comparable scores",
        compute=rice,
        factors=(
            ("reach", "Reach", "1-10 (1 = few, 10 = all users)"),
            ("impact", "Impact", "0.25 minimal, 0.5 low, 1 medium, 2 high, 3 massive"),
            ("confidence", "Confidence", "0.5 low, 0.8 medium, 1.0 high"),
            ("effort", "Effort", "1-10 (1 = days, 10 = months)"),
        ),
    ),
    "ice": FrameworkInfo(
        id="ice",
        name="ICE",
        description="Simple scoring for rapid decisions",
        formula="Impact × Confidence × Ease",
        best_for="Fast-moving teams and quick prioritization sessions",
        compute=ice,
        factors=(
            ("impact", "Impact", "1-10 (1 = minimal, 10 = transformative)"),
            ("confidence", "Confidence", "1-10 (1 = guess, 10 = certain)"),
            ("ease", "Ease", "1-10 (1 = very hard, 10 = very easy)"),
        ),
    ),
    "value-effort": FrameworkInfo(
        id="value-effort",
        name="Value vs Effort",
        description="2x2 matrix prioritization",
        formula="Value / Effort → Quadrant",
        best_for="Visual prioritization and stakeholder communication",
        compute=value_effort,
        factors=(
            ("value", "Value", "1-10 (1 = minimal value, 10 = critical value)"),
            ("effort", "Effort", "1-10 (1 = trivial, 10 = major project)"),
        ),
    ),
    "moscow": FrameworkInfo(
        id="moscow",
        name="MoSCoW",
        description="Categorical prioritization for releases",
        formula="Must / Should / Could / Won't",
        best_for="Release planning and scope definition",
        compute=moscow,
        factors=(("moscow", "Category", "must | should | could | wont"),),
    ),
}


def framework_info(framework: str) -> dict[str, str]:
    info = FRAMEWORKS[framework]
    return {
        "id": info.id, "name": info.name, "description": info.description,
        "formula": info.formula, "best_for": info.best_for,
    }


def framework_factors(framework: str, product: str = "chat") -> list[dict[str, Any]]:
    """Factor keys, labels and scales a framework reads; weighted depends on product stage."""
    if framework == "weighted":
        return [{"key": key, "label": label, "scale": "1-10"} for key, label in stage_factors(product)]
    return [{"key": k, "label": label, "scale": scale} for k, label, scale in FRAMEWORKS[framework].factors]
