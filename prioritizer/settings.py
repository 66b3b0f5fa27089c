"""User-editable scoring settings and the closed set of commands that change them.

Settings live in the document store under ``settings``; stored values are
deep-merged over :func:`default_settings` on every load, so new fields pick up
their defaults. Updates go through :func:`apply_command`, one handler per
command class.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from prioritizer.config import AppConfig
from prioritizer.products import DEFAULT_TIER_MULTIPLIERS, MATURE_WEIGHTS, NEW_WEIGHTS
from prioritizer.schemas import ScoringFramework
from prioritizer.score_cache import settings_hash
from prioritizer.store import DocumentStore, deep_merge
from prioritizer.utils import utc_now_iso

log = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
API_KEYS_KEY = "api_keys"


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class PromptConfig(BaseModel):
    """Business context injected into every scoring prompt."""
    company_description: str = (
        "A B2B communication platform providing in-app messaging, voice/video calling "
        "and AI agent solutions for developers, serving startups through enterprises."
    )
    products: list[str] = [
        "Chat & Messaging - Enterprise features, Competitive parity, Revenue impact",
        "Voice & Video Calling - Enterprise features, Reliability, Quality",
        "AI Agents Platform - Capability gaps, Differentiation, Strategic alignment",
        "Bring Your Own Agent (BYOA) - Integration flexibility, Developer experience, Ecosystem",
    ]
    strategic_priorities: list[str] = [
        "Upmarket shift to enterprise customers",
        "Improved developer experience (DX)",
        "AI-first product capabilities",
    ]
    competitors: list[str] = ["Sendbird", "Stream", "Twilio", "Vonage"]
    known_gaps: list[str] = []
    customer_tiers: dict[str, str] = {
        "C1": "Enterprise (>$100K ARR)",
        "C2": "Growth ($50-100K ARR)",
        "C3": "Business ($20-50K ARR)",
        "C4": "Startup ($5-20K ARR)",
        "C5": "Free/Trial",
    }
    additional_instructions: str = ""


class AIModelSettings(BaseModel):
    enabled: Literal["openai", "anthropic", "both"] = "both"
    default_model: Literal["openai", "anthropic"] = "anthropic"
    openai_model: str = "gpt-4o"
    anthropic_model: str = "claude-sonnet-4-20250514"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)


def _default_weights() -> dict[str, dict[str, float]]:
    return {"mature": dict(MATURE_WEIGHTS), "new": dict(NEW_WEIGHTS)}


class Settings(BaseModel):
    active_framework: ScoringFramework = "weighted"
    weights: dict[str, dict[str, float]] = Field(default_factory=_default_weights)
    tier_multipliers: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_TIER_MULTIPLIERS))
    ai_model: AIModelSettings = Field(default_factory=AIModelSettings)
    prompt_config: PromptConfig = Field(default_factory=PromptConfig)
    project_mappings: dict[str, str] = {}
    excluded_projects: list[str] = []
    last_updated: str = ""


def default_settings() -> Settings:
    return Settings(last_updated=utc_now_iso())


def load_settings(store: DocumentStore) -> Settings:
    stored = store.load(SETTINGS_KEY, {})
    if not isinstance(stored, dict):
        stored = {}
    return Settings.model_validate(deep_merge(default_settings().model_dump(), stored))


def save_settings(store: DocumentStore, settings: Settings) -> Settings:
    settings = settings.model_copy(update={"last_updated": utc_now_iso()})
    store.save(SETTINGS_KEY, settings.model_dump())
    return settings


def current_settings_hash(settings: Settings) -> str:
    return settings_hash(settings.prompt_config, settings.active_framework, settings.ai_model.temperature)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class SetFramework(BaseModel):
    action: Literal["setFramework"]
    framework: ScoringFramework


class SetAIModel(BaseModel):
    action: Literal["setAIModel"]
    enabled: Literal["openai", "anthropic", "both"] | None = None
    default_model: Literal["openai", "anthropic"] | None = None
    openai_model: str | None = None
    anthropic_model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class SetMatureWeights(BaseModel):
    action: Literal["setMatureWeights"]
    weights: dict[str, float]


class SetNewProductWeights(BaseModel):
    action: Literal["setNewProductWeights"]
    weights: dict[str, float]


class SetTierMultipliers(BaseModel):
    action: Literal["setTierMultipliers"]
    multipliers: dict[Literal["C1", "C2", "C3", "C4", "C5"], float]


class SetPromptConfig(BaseModel):
    action: Literal["setPromptConfig"]
    prompt_config: dict[str, Any]


class SetProjectMapping(BaseModel):
    """Map a tracker project to a product; ``product=None`` removes the mapping."""
    action: Literal["setProjectMapping"]
    project_id: str
    product: Literal["chat", "calling", "ai-agents", "byoa"] | None = None


class SetExcludedProjects(BaseModel):
    action: Literal["setExcludedProjects"]
    project_ids: list[str]


class ResetSettings(BaseModel):
    action: Literal["reset"]


COMMAND_TYPES = (
    SetFramework, SetAIModel, SetMatureWeights, SetNewProductWeights, SetTierMultipliers,
    SetPromptConfig, SetProjectMapping, SetExcludedProjects, ResetSettings,
)

SettingsCommand = Annotated[Union[COMMAND_TYPES], Field(discriminator="action")]

_command_adapter: TypeAdapter[Any] = TypeAdapter(SettingsCommand)


def parse_command(payload: dict[str, Any]) -> BaseModel:
    """Validate a raw ``{"action": ..., ...}`` payload; raises ``pydantic.ValidationError``."""
    return _command_adapter.validate_python(payload)


_HANDLERS: dict[type[BaseModel], Callable[[Settings, Any], Settings]] = {}


def _handles(command_type: type[BaseModel]):
    def register(fn: Callable[[Settings, Any], Settings]) -> Callable[[Settings, Any], Settings]:
        _HANDLERS[command_type] = fn
        return fn
    return register


def _update(settings: Settings, **changes: Any) -> Settings:
    return settings.model_copy(update=changes)


@_handles(SetFramework)
def _set_framework(settings: Settings, cmd: SetFramework) -> Settings:
    return _update(settings, active_framework=cmd.framework)


@_handles(SetAIModel)
def _set_ai_model(settings: Settings, cmd: SetAIModel) -> Settings:
    changes = cmd.model_dump(exclude={"action"}, exclude_none=True)
    return _update(settings, ai_model=settings.ai_model.model_copy(update=changes))


@_handles(SetMatureWeights)
def _set_mature_weights(settings: Settings, cmd: SetMatureWeights) -> Settings:
    return _update(settings, weights={**settings.weights, "mature": {**settings.weights.get("mature", {}), **cmd.weights}})


@_handles(SetNewProductWeights)
def _set_new_weights(settings: Settings, cmd: SetNewProductWeights) -> Settings:
    return _update(settings, weights={**settings.weights, "new": {**settings.weights.get("new", {}), **cmd.weights}})


@_handles(SetTierMultipliers)
def _set_tier_multipliers(settings: Settings, cmd: SetTierMultipliers) -> Settings:
    return _update(settings, tier_multipliers={**settings.tier_multipliers, **cmd.multipliers})


@_handles(SetPromptConfig)
def _set_prompt_config(settings: Settings, cmd: SetPromptConfig) -> Settings:
    merged = deep_merge(settings.prompt_config.model_dump(), cmd.prompt_config)
    return _update(settings, prompt_config=PromptConfig.model_validate(merged))


@_handles(SetProjectMapping)
def _set_project_mapping(settings: Settings, cmd: SetProjectMapping) -> Settings:
    mappings = dict(settings.project_mappings)
    if cmd.product is None:
        mappings.pop(cmd.project_id, None)
    else:
        mappings[cmd.project_id] = cmd.product
    return _update(settings, project_mappings=mappings)


@_handles(SetExcludedProjects)
def _set_excluded_projects(settings: Settings, cmd: SetExcludedProjects) -> Settings:
    return _update(settings, excluded_projects=list(dict.fromkeys(cmd.project_ids)))


@_handles(ResetSettings)
def _reset(settings: Settings, cmd: ResetSettings) -> Settings:
    return default_settings()


_unhandled = [t.__name__ for t in COMMAND_TYPES if t not in _HANDLERS]
if _unhandled:
    raise RuntimeError(f"Settings commands without a handler: {', '.join(_unhandled)}")


def apply_command(store: DocumentStore, command: BaseModel) -> Settings:
    """Run one command against the stored settings and persist the result."""
    handler = _HANDLERS[type(command)]
    before = load_settings(store)
    after = save_settings(store, handler(before, command))
    if isinstance(command, SetFramework) and before.active_framework != after.active_framework:
        from prioritizer.overrides import append_audit
        append_audit(
            store, action="framework_change", feature_id="*",
            old_value=before.active_framework, new_value=after.active_framework,
        )
    log.info("Applied settings command %s", getattr(command, "action", type(command).__name__))
    return after


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def resolve_api_keys(store: DocumentStore, config: AppConfig) -> dict[str, str]:
    """Stored keys win over environment keys."""
    stored = store.load(API_KEYS_KEY, {})
    if not isinstance(stored, dict):
        stored = {}
    return {
        "openai": stored.get("openai") or config.openai_api_key,
        "anthropic": stored.get("anthropic") or config.anthropic_api_key,
        "linear": stored.get("linear") or config.linear_api_key,
    }


def set_api_key(store: DocumentStore, provider: str, key: str | None) -> None:
    if provider not in ("openai", "anthropic", "linear"):
        raise ValueError(f"Unknown provider: {provider!r}")
    stored = store.load(API_KEYS_KEY, {})
    if not isinstance(stored, dict):
        stored = {}
    if key:
        stored[provider] = key
    else:
        stored.pop(provider, None)
    store.save(API_KEYS_KEY, stored)


def mask_key(key: str) -> str:
    if not key:
        return ""
    return f"{key[:4]}...{key[-4:]}" if len(key) > 8 else "****"


