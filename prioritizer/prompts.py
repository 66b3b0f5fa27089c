"""Prompt construction for LLM factor scoring.

The system prompt carries company context from :class:`~prioritizer.settings.PromptConfig`
plus framework instructions and factor scales; the user prompt is a dossier
of one feature and its related community posts and support tickets.
"""
from __future__ import annotations

from dataclasses import dataclass

from prioritizer.products import product_display_name, product_stage
from prioritizer.schemas import FeaturebasePost, FeatureRequest, ZendeskTicket
from prioritizer.settings import PromptConfig
from prioritizer.utils import parse_timestamp


@dataclass(frozen=True)
class FactorPrompt:
    key: str
    name: str
    prompt: str
    scale: str


@dataclass(frozen=True)
class FrameworkPrompt:
    name: str
    instructions: str
    factors: tuple[FactorPrompt, ...]
    response_format: str


# ---------------------------------------------------------------------------
# Factor definitions
# ---------------------------------------------------------------------------

_REVENUE = FactorPrompt(
    "revenueImpact", "Revenue Impact",
    "How much potential revenue could this feature unlock? Consider: customer tier requesting it, "
    "deal sizes at risk, market expansion potential, upsell opportunities.",
    "1-3: Low (nice-to-have), 4-6: Medium (influences some deals), 7-9: High (significant revenue), "
    "10: Critical (blocking major deals)",
)
_ENTERPRISE = FactorPrompt(
    "enterpriseReadiness", "Enterprise Readiness",
    "How much does this enable enterprise sales? Consider: security features, compliance requirements, "
    "scalability, admin controls, audit capabilities.",
    "1-3: Consumer-grade, 4-6: SMB suitable, 7-9: Enterprise-ready, 10: Enterprise-required",
)
_VOLUME = FactorPrompt(
    "requestVolume", "Request Volume",
    "How frequently is this being requested? Consider: community board upvotes, support tickets, "
    "sales feedback, customer interviews.",
    "1-3: Rare (1-2 requests), 4-6: Occasional (3-10 requests), 7-9: Frequent (10+ requests), "
    "10: Constant demand",
)
_PARITY = FactorPrompt(
    "competitiveParity", "Competitive Parity",
    "Do competitors have this feature? Is it causing us to lose deals?",
    "1-3: Unique to us, 4-6: Some competitors have it, 7-9: Most competitors have it, "
    "10: Table stakes we're missing",
)
_STRATEGY = FactorPrompt(
    "strategicAlignment", "Strategic Alignment",
    "How well does this align with company strategic priorities?",
    "1-3: Tangential, 4-6: Supports strategy, 7-9: Directly enables strategy, 10: Core strategic initiative",
)
_EFFORT = FactorPrompt(
    "effort", "Effort",
    "How much engineering effort is required? Consider: complexity, dependencies, required expertise, "
    "testing needs.",
    "1-3: Days of work, 4-6: Weeks of work, 7-9: Month+ of work, 10: Quarter+ major project",
)
_GAP = FactorPrompt(
    "capabilityGap", "Capability Gap Filled",
    "How much does this fill a gap in the product's current capabilities?",
    "1-3: Minor polish, 4-6: Useful addition, 7-9: Fills a clear gap, 10: Core missing capability",
)
_DIFFERENTIATION = FactorPrompt(
    "competitiveDifferentiation", "Competitive Differentiation",
    "How much would this set the product apart from competitors?",
    "1-3: Commodity, 4-6: Some differentiation, 7-9: Strong differentiator, 10: Category-defining",
)

MATURE_WEIGHTED_FACTORS = (_REVENUE, _ENTERPRISE, _VOLUME, _PARITY, _STRATEGY, _EFFORT)
NEW_WEIGHTED_FACTORS = (_GAP, _STRATEGY, _DIFFERENTIATION, _VOLUME, _EFFORT)


def _response_format(factors: tuple[FactorPrompt, ...]) -> str:
    rows = ",\n".join(
        f'    {{ "factor": "{f.key}", "score": 7, "reasoning": "...", "confidence": "medium" }}'
        for f in factors
    )
    return '{\n  "suggestions": [\n' + rows + '\n  ],\n  "summary": "Overall assessment..."\n}'


_RICE_FACTORS = (
    FactorPrompt(
        "reach", "Reach",
        "How many customers/users will this feature affect per quarter?",
        "1: <100 users, 3: 100-1K users, 5: 1K-5K users, 7: 5K-20K users, 10: 20K+ users",
    ),
    FactorPrompt(
        "impact", "Impact",
        "How much will this impact each affected customer?",
        "0.25: Minimal, 0.5: Low, 1: Medium, 2: High, 3: Massive",
    ),
    FactorPrompt(
        "confidence", "Confidence",
        "How confident are we in these estimates?",
        "0.5: Low (gut feeling), 0.8: Medium (some data), 1.0: High (validated)",
    ),
    FactorPrompt(
        "effort", "Effort",
        "How many person-months of work will this take?",
        "1: Few days, 3: 2-4 weeks, 5: 1-2 months, 7: 2-4 months, 10: 4+ months",
    ),
)

_ICE_FACTORS = (
    FactorPrompt(
        "impact", "Impact",
        "How much will this impact key business metrics (revenue, retention, activation)?",
        "1-3: Minor, 4-6: Moderate, 7-9: Major, 10: Game-changing",
    ),
    FactorPrompt(
        "confidence", "Confidence",
        "How confident are we this will deliver the expected impact? Answer on a 0-1 scale.",
        "0.1-0.3: Guess, 0.4-0.6: Some evidence, 0.7-0.9: Strong evidence, 1.0: Proven",
    ),
    FactorPrompt(
        "ease", "Ease",
        "How easy is this to implement?",
        "1-3: Very hard (months), 4-6: Moderate (weeks), 7-9: Easy (days), 10: Trivial",
    ),
)

_VALUE_EFFORT_FACTORS = (
    FactorPrompt(
        "value", "Value",
        "What is the overall business value of this feature?",
        "1-3: Low, 4-5: Medium, 6-8: High, 9-10: Critical",
    ),
    FactorPrompt(
        "effort", "Effort",
        "How much total effort is required to build this?",
        "1-3: Days, 4-5: 1-2 weeks, 6-8: Weeks to a month, 9-10: Months",
    ),
)

_MOSCOW_FACTORS = (
    FactorPrompt(
        "moscow", "MoSCoW Category",
        "Which MoSCoW category does this feature belong to? Put the category in a "
        '"category" field and a matching 1-10 score in "score".',
        "must (9-10), should (6-8), could (3-5), wont (1-2)",
    ),
    FactorPrompt(
        "value", "Value",
        "Supporting score for ordering within the same category.",
        "1-10",
    ),
)

FRAMEWORK_PROMPTS: dict[str, FrameworkPrompt] = {
    "weighted": FrameworkPrompt(
        "Weighted Scoring",
        "## Weighted Scoring Methodology\n"
        "Each factor is scored 1-10, then multiplied by its weight and summed for the final score.\n"
        "Consider all factors holistically. Pay special attention to features that address known "
        "gaps or align with strategic priorities.",
        MATURE_WEIGHTED_FACTORS,
        _response_format(MATURE_WEIGHTED_FACTORS),
    ),
    "rice": FrameworkPrompt(
        "RICE",
        "## RICE Framework Methodology\n"
        "RICE Score = (Reach × Impact × Confidence) / Effort.\n"
        "Be honest about confidence: lower it when estimates are uncertain.",
        _RICE_FACTORS,
        _response_format(_RICE_FACTORS),
    ),
    "ice": FrameworkPrompt(
        "ICE",
        "## ICE Framework Methodology\n"
        "ICE Score = Impact × Confidence × Ease. Ease is the inverse of effort (10 = very easy).",
        _ICE_FACTORS,
        _response_format(_ICE_FACTORS),
    ),
    "value-effort": FrameworkPrompt(
        "Value vs Effort",
        "## Value vs Effort Methodology\n"
        "Score both dimensions 1-10. Quick Wins: value >5, effort ≤5. Big Bets: value >5, effort >5. "
        "Fill-ins: value ≤5, effort ≤5. Time Sinks: value ≤5, effort >5.",
        _VALUE_EFFORT_FACTORS,
        _response_format(_VALUE_EFFORT_FACTORS),
    ),
    "moscow": FrameworkPrompt(
        "MoSCoW",
        "## MoSCoW Methodology\n"
        "MUST HAVE: non-negotiable for the release. SHOULD HAVE: important but not critical. "
        "COULD HAVE: include if time permits. WON'T HAVE: explicitly out of scope this time.",
        _MOSCOW_FACTORS,
        '{\n  "suggestions": [\n'
        '    { "factor": "moscow", "category": "should", "score": 7, "reasoning": "...", "confidence": "high" },\n'
        '    { "factor": "value", "score": 7, "reasoning": "...", "confidence": "medium" }\n'
        '  ],\n  "summary": "SHOULD HAVE: ..."\n}',
    ),
}


def framework_factor_prompts(framework: str, product: str) -> tuple[FactorPrompt, ...]:
    if framework == "weighted" and product_stage(product) == "new":
        return NEW_WEIGHTED_FACTORS
    return FRAMEWORK_PROMPTS[framework].factors


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_company_context(config: PromptConfig) -> str:
    sections = [f"## Company Context\n{config.company_description}"]
    if config.products:
        sections.append("## Products\n" + "\n".join(f"- {p}" for p in config.products))
    if config.strategic_priorities:
        sections.append("## Current Strategic Priorities\n" + "\n".join(f"- {p}" for p in config.strategic_priorities))
    if config.competitors:
        sections.append("## Key Competitors\n" + ", ".join(config.competitors))
    if config.known_gaps:
        sections.append(
            "## Known High-Priority Gaps (prioritize features addressing these)\n"
            + "\n".join(f"- {g}" for g in config.known_gaps)
        )
    sections.append("## Customer Tiers\n" + "\n".join(
        f"- {tier}: {definition}" for tier, definition in sorted(config.customer_tiers.items())
    ))
    if config.additional_instructions:
        sections.append(f"## Additional Instructions\n{config.additional_instructions}")
    return "\n\n".join(sections)


def build_system_prompt(framework: str, product: str, config: PromptConfig | None = None) -> str:
    fw = FRAMEWORK_PROMPTS[framework]
    mature = product_stage(product) == "mature"
    parts = [
        f"You are a product prioritization expert using the {fw.name} framework.",
        build_company_context(config or PromptConfig()),
        fw.instructions,
        f"## Product Being Evaluated: {product_display_name(product)}\n"
        "Product Stage: " + (
            "Mature (focus on enterprise features and competitive parity)" if mature
            else "New (focus on capability gaps and differentiation)"
        ),
        "## Factors to Evaluate",
    ]
    for f in framework_factor_prompts(framework, product):
        parts.append(f"### {f.name}\n{f.prompt}\n**Scale**: {f.scale}")
    return "\n\n".join(parts)


def build_user_prompt(
    feature: FeatureRequest,
    related_posts: list[FeaturebasePost] | None = None,
    related_tickets: list[ZendeskTicket] | None = None,
    framework: str = "weighted",
) -> str:
    """Assemble the feature dossier and the expected JSON response shape."""
    fw = FRAMEWORK_PROMPTS[framework]
    sections = [
        "## Feature to Score\n"
        f"**Title**: {feature.title}\n"
        f"**Product**: {product_display_name(feature.product)}\n"
        f"**Customer Tier**: {feature.customer_tier}\n"
        f"**Type**: {feature.type}\n"
        f"**Source**: {feature.source}\n\n"
        f"**Description**:\n{feature.description or 'No description provided'}\n\n"
        f"**Labels**: {', '.join(feature.labels) or 'None'}"
    ]

    if feature.comments:
        lines = [f"## Discussion & Comments ({len(feature.comments)} comments)"]
        for c in feature.comments[:5]:
            body = c.body if len(c.body) <= 500 else c.body[:500] + "..."
            date = parse_timestamp(c.created_at).date().isoformat() if c.created_at else "undated"
            lines.append(f"**[{date}]**: {body}")
        sections.append("\n".join(lines))

    if related_posts:
        lines = [f"## Related Community Requests ({len(related_posts)} found)"]
        for post in related_posts[:3]:
            lines.append(f'- "{post.title}" - {post.upvotes} upvotes')
            if post.content:
                lines.append(f"  Content: {post.content[:200]}...")
        lines.append(f"Total related upvotes: {sum(p.upvotes for p in related_posts)}")
        sections.append("\n".join(lines))

    if related_tickets:
        lines = [f"## Related Support Tickets ({len(related_tickets)} found)"]
        for ticket in related_tickets[:3]:
            lines.append(f'- "{ticket.subject}" ({ticket.priority or "normal"} priority)')
        sections.append("\n".join(lines))

    factors = framework_factor_prompts(framework, feature.product)
    sections.append(
        f"## Scoring Instructions ({fw.name})\n"
        f"Please evaluate this feature using the {fw.name} framework.\n\nFactors to score:\n"
        + "\n".join(f"- **{f.name}** ({f.key}): {f.scale}" for f in factors)
    )
    response_format = fw.response_format if factors is fw.factors else _response_format(factors)
    sections.append(f"## Required Response Format (JSON)\n```json\n{response_format}\n```")
    return "\n\n".join(sections)
