"""Product catalogue: project/label patterns, product stage, default weights and tiers."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

Product = Literal["chat", "calling", "ai-agents", "byoa"]
CustomerTier = Literal["C1", "C2", "C3", "C4", "C5"]
ProductStage = Literal["mature", "new"]
FeatureType = Literal["feature", "enhancement", "bug"]
FeatureSource = Literal["featurebase", "internal", "support"]

ALL_PRODUCTS: tuple[str, ...] = ("chat", "calling", "ai-agents", "byoa")
ALL_TIERS: tuple[str, ...] = ("C1", "C2", "C3", "C4", "C5")
DEFAULT_PRODUCT = "chat"
DEFAULT_TIER = "C4"


@dataclass(frozen=True)
class ProductConfig:
    id: str
    name: str
    stage: str
    project_patterns: tuple[str, ...] = field(default_factory=tuple)
    label_patterns: tuple[str, ...] = field(default_factory=tuple)


PRODUCT_CONFIGS: tuple[ProductConfig, ...] = (
    ProductConfig(
        id="chat",
        name="Chat & Messaging",
        stage="mature",
        project_patterns=(
            "Product Icebox (In-app Messaging)", "Product Icebox (UI Kits)",
            "Product Icebox (SDKs)", "In-app Messaging", "Chat", "UI Kits", "SDKs",
        ),
        label_patterns=("Chat", "Messaging", "UI Kits", "Chat SDKs", "In-app Messaging"),
    ),
    ProductConfig(
        id="calling",
        name="Voice & Video Calling",
        stage="mature",
        project_patterns=(
            "Product Icebox (Voice & Video Calling)", "Voice & Video Calling",
            "Calling", "Calls SDKs",
        ),
        label_patterns=("Calling", "Voice", "Video", "Calls SDKs", "Voice & Video"),
    ),
    ProductConfig(
        id="ai-agents",
        name="AI Agents Platform",
        stage="new",
        project_patterns=("Product Icebox (AI Agents)", "AI Agents", "Agentic-Service", "AI Platform"),
        label_patterns=("AI", "Agents", "AI Agents", "Agentic-Service", "AI Platform"),
    ),
    ProductConfig(
        id="byoa",
        name="Bring Your Own Agent",
        stage="new",
        project_patterns=("Product Icebox (BYOA)", "BYOA", "Bring Your Own Agent"),
        label_patterns=("BYOA", "Bring Your Own Agent"),
    ),
)

# Weight tables: factors absent from a table carry weight 0 and drop out of scoring.
MATURE_WEIGHTS: dict[str, float] = {
    "revenueImpact": 0.30,
    "enterpriseReadiness": 0.20,
    "requestVolume": 0.15,
    "competitiveParity": 0.15,
    "strategicAlignment": 0.10,
    "effort": 0.10,
    "capabilityGap": 0.0,
    "competitiveDifferentiation": 0.0,
}

NEW_WEIGHTS: dict[str, float] = {
    "revenueImpact": 0.0,
    "enterpriseReadiness": 0.0,
    "requestVolume": 0.15,
    "competitiveParity": 0.0,
    "strategicAlignment": 0.25,
    "effort": 0.15,
    "capabilityGap": 0.30,
    "competitiveDifferentiation": 0.15,
}

# All 1.0: the LLM prompt already weighs customer tier.
DEFAULT_TIER_MULTIPLIERS: dict[str, float] = {tier: 1.0 for tier in ALL_TIERS}

# Ordered factor lists per stage, with display labels.
MATURE_FACTORS: tuple[tuple[str, str], ...] = (
    ("revenueImpact", "Revenue Impact"),
    ("enterpriseReadiness", "Enterprise Readiness"),
    ("requestVolume", "Request Volume"),
    ("competitiveParity", "Competitive Parity"),
    ("strategicAlignment", "Strategic Alignment"),
    ("effort", "Effort (inverse)"),
)

NEW_FACTORS: tuple[tuple[str, str], ...] = (
    ("capabilityGap", "Capability Gap Filled"),
    ("strategicAlignment", "Strategic Alignment"),
    ("competitiveDifferentiation", "Competitive Differentiation"),
    ("requestVolume", "Request Volume"),
    ("effort", "Effort (inverse)"),
)

_TIER_RE = re.compile(r"(?:Customer Priority|C)(?:\s*→?\s*)?(C?[1-5])", re.IGNORECASE)


def get_product_config(product_id: str) -> ProductConfig | None:
    return next((p for p in PRODUCT_CONFIGS if p.id == product_id), None)


def product_stage(product_id: str) -> str:
    config = get_product_config(product_id)
    return config.stage if config else "mature"


def product_display_name(product_id: str) -> str:
    config = get_product_config(product_id)
    return config.name if config else product_id


def stage_factors(product_id: str) -> tuple[tuple[str, str], ...]:
    return NEW_FACTORS if product_stage(product_id) == "new" else MATURE_FACTORS


def default_weights(product_id: str) -> dict[str, float]:
    return dict(NEW_WEIGHTS if product_stage(product_id) == "new" else MATURE_WEIGHTS)


def product_from_project(project_name: str | None) -> str:
    """Match a tracker project name against every product's project patterns."""
    if not project_name:
        return DEFAULT_PRODUCT
    lower = project_name.lower()
    for config in PRODUCT_CONFIGS:
        for pattern in config.project_patterns:
            if pattern.lower() in lower:
                return config.id
    return DEFAULT_PRODUCT


def product_from_labels(labels: list[str]) -> str | None:
    lower_labels = [label.lower() for label in labels]
    for config in PRODUCT_CONFIGS:
        for pattern in config.label_patterns:
            p = pattern.lower()
            if any(p in label for label in lower_labels):
                return config.id
    return None


def customer_tier_from_labels(labels: list[str]) -> str:
    """Extract ``C1``..``C5`` from labels like ``Customer Priority → C2`` or ``C3``."""
    for label in labels:
        m = _TIER_RE.search(label)
        if m:
            tier = m.group(1).upper()
            return tier if tier.startswith("C") else f"C{tier}"
    return DEFAULT_TIER


def weights_for_product(
    product_id: str,
    stage_weights: dict[str, dict[str, float]] | None = None,
) -> dict[str, float]:
    """Default weights for the product's stage, overlaid with configured ones keyed by stage."""
    weights = default_weights(product_id)
    if stage_weights:
        weights.update(stage_weights.get(product_stage(product_id)) or {})
    return weights
