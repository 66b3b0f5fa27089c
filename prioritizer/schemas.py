"""Pydantic models: raw source records, correlated features, scoring results, API bodies."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ScoringFramework = Literal["weighted", "rice", "ice", "value-effort", "moscow"]
AIModelName = Literal["openai", "anthropic", "gemini"]
ModelChoice = Literal["openai", "anthropic", "both"]
Confidence = Literal["high", "medium", "low"]

# Factor name -> 1..10 score, or a MoSCoW category for ``moscow``.
ScoreFactors = dict[str, float | str]


class _SourceModel(BaseModel):
    """Raw records arrive in the tracker's camelCase JSON."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore",
        coerce_numbers_to_str=True,
    )


def _unwrap_nodes(value: Any) -> Any:
    """Accept GraphQL connection shapes (``{"nodes": [...]}``) as plain lists."""
    if value is None:
        return []
    if isinstance(value, dict):
        return value.get("nodes") or []
    return value


# ---------------------------------------------------------------------------
# Raw source records
# ---------------------------------------------------------------------------


class IssueState(_SourceModel):
    id: str = ""
    name: str = ""
    type: str = ""


class IssueLabel(_SourceModel):
    id: str = ""
    name: str


class IssueProject(_SourceModel):
    id: str = ""
    name: str = ""


class IssueAttachment(_SourceModel):
    id: str = ""
    url: str = ""
    title: str | None = None


class IssueComment(_SourceModel):
    id: str = ""
    body: str = ""
    created_at: str = ""


class LinearIssue(_SourceModel):
    id: str
    identifier: str = ""
    title: str = ""
    description: str | None = None
    url: str = ""
    state: IssueState = Field(default_factory=IssueState)
    priority: int = 0
    priority_label: str = ""
    labels: list[IssueLabel] = []
    project: IssueProject | None = None
    attachments: list[IssueAttachment] = []
    comments: list[IssueComment] = []
    created_at: str = ""
    updated_at: str = ""
    sort_order: float = 0.0

    @field_validator("labels", "attachments", "comments", mode="before")
    @classmethod
    def unwrap_connection(cls, v: Any) -> Any:
        return _unwrap_nodes(v)

    @field_validator("state", mode="before")
    @classmethod
    def default_state(cls, v: Any) -> Any:
        return v or {}

    @property
    def label_names(self) -> list[str]:
        return [label.name for label in self.labels]


class FeaturebasePost(_SourceModel):
    id: str
    title: str = ""
    content: str = ""
    status: str = ""
    upvotes: int = 0
    url: str = ""
    created_at: str = ""
    updated_at: str = ""


class ZendeskTicket(_SourceModel):
    id: str
    subject: str = ""
    description: str = ""
    status: str = ""
    priority: str | None = None
    tags: list[str] = []
    created_at: str = ""
    updated_at: str = ""


class LinearProject(_SourceModel):
    id: str
    name: str = ""
    description: str | None = None
    state: str = ""
    issue_count: int = 0


# ---------------------------------------------------------------------------
# Correlated feature
# ---------------------------------------------------------------------------


class FeatureComment(BaseModel):
    body: str
    created_at: str = ""


class FeatureRequest(BaseModel):
    id: str
    identifier: str
    title: str
    description: str = ""
    url: str = ""
    product: str
    customer_tier: str
    type: str = "feature"
    source: str = "internal"
    featurebase_url: str | None = None
    featurebase_upvotes: int | None = None
    support_ticket_count: int = 0
    created_at: str
    updated_at: str
    labels: list[str] = []
    project_id: str | None = None
    project_name: str | None = None
    linear_state: str | None = None
    linear_priority: int | None = None
    sort_order: float | None = None
    comments: list[FeatureComment] | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    duplicate_of_identifier: str | None = None
    duplicates: list[str] | None = None


# ---------------------------------------------------------------------------
# AI results and cache entries
# ---------------------------------------------------------------------------


class AISuggestion(BaseModel):
    factor: str
    score: float | str
    reasoning: str = ""
    confidence: Confidence = "medium"
    evidence: str | None = None


class AIModelResult(BaseModel):
    model: AIModelName
    suggestions: list[AISuggestion] = []
    total_score: float = 0.0
    summary: str = ""
    tokens_used: int = 0
    cost: float = 0.0
    error: Literal["API_KEY_MISSING", "API_KEY_INVALID", "API_ERROR"] | None = None


class StoredAIScore(BaseModel):
    feature_id: str
    openai: AIModelResult | None = None
    anthropic: AIModelResult | None = None
    gemini: AIModelResult | None = None
    scored_at: str
    settings_hash: str
    framework: ScoringFramework = "weighted"
    model_used: str = "anthropic"


# ---------------------------------------------------------------------------
# Scored feature
# ---------------------------------------------------------------------------


class BreakdownItem(BaseModel):
    factor: str
    label: str
    weight: float
    score: float
    contribution: float


class ScoredFeature(FeatureRequest):
    scores: ScoreFactors = {}
    manual_overrides: ScoreFactors | None = None
    ai_suggestions: dict[str, AIModelResult] | None = None
    base_score: float = 0.0
    multiplier: float = 1.0
    raw_final_score: float = 0.0
    final_score: float = 0.0
    breakdown: list[BreakdownItem] = []
    flags: list[str] = []
    mapped_priority: Literal[1, 2, 3, 4] | None = None
    framework: ScoringFramework = "weighted"


# ---------------------------------------------------------------------------
# API request / response bodies
# ---------------------------------------------------------------------------


class OverrideIn(BaseModel):
    factor: str
    value: float | str
    updated_by: str = "user"
    reason: str | None = None


class ScoreFeatureIn(BaseModel):
    model: ModelChoice | None = None
    save: bool = True


class ScoreAllIn(BaseModel):
    feature_ids: list[str] | None = None
    force_rescore: bool = False
    model: ModelChoice | None = None


class LinearSyncIn(BaseModel):
    feature_ids: list[str] | None = None
    product: str | None = None
    add_comments: bool = False


class SyncResultOut(BaseModel):
    success: bool
    issue_id: str
    error: str | None = None


class StatsOut(BaseModel):
    total_features: int
    duplicates: int
    by_product: dict[str, int]
    by_priority: dict[str, int]
    by_tier: dict[str, int]
    ai_scored: int
    stale_scores: int
    last_synced: str | None = None
    top_features: list[dict[str, Any]]
