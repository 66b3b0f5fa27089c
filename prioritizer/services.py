"""Shared business logic behind the HTTP API."""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Any

import httpx
from sqlalchemy.orm import Session

from prioritizer.config import AppConfig
from prioritizer.correlator import correlate_data, related_featurebase_posts, related_zendesk_tickets
from prioritizer.errors import ConfigurationError, NotFoundError
from prioritizer.frameworks import FRAMEWORKS, framework_factors, framework_info
from prioritizer.jobs import (
    BatchPlan,
    JobRegistry,
    ScoreOutcome,
    ScoringJob,
    persist_outcome,
    run_batch_scoring,
    select_features_to_score,
)
from prioritizer.linear import LinearClient, sync_features
from prioritizer.llm import LLMCallError, analyze_feature, available_models
from prioritizer.overrides import append_audit, feature_audit_log, feature_overrides, overrides_map
from prioritizer.products import ALL_PRODUCTS, ALL_TIERS
from prioritizer.schemas import FeatureRequest, LinearSyncIn, ScoredFeature
from prioritizer.score_cache import AIScoreCache
from prioritizer.scoring import compare_frameworks, score_and_sort_features, score_feature
from prioritizer.settings import Settings, current_settings_hash, load_settings, mask_key, resolve_api_keys
from prioritizer.sources import SourceData, load_all, load_linear_projects, save_linear_snapshot
from prioritizer.store import DocumentStore
from prioritizer.usage import add_usage_record, today_usage, usage_stats

log = logging.getLogger(__name__)

# Heavy fields left out of list responses
LIST_EXCLUDE = {"comments", "ai_suggestions", "description"}


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------


def load_features(
    config: AppConfig, settings: Settings, sources: SourceData | None = None,
) -> list[FeatureRequest]:
    sources = sources or load_all(config)
    return correlate_data(
        sources.issues, sources.posts, sources.tickets,
        settings.project_mappings, settings.excluded_projects, config.thresholds,
    )


def score_features(session: Session, settings: Settings, features: list[FeatureRequest]) -> list[ScoredFeature]:
    store = DocumentStore(session)
    return score_and_sort_features(
        features,
        settings.active_framework,
        AIScoreCache(session).get_map(),
        overrides_map(store),
        settings.weights,
        settings.tier_multipliers,
        settings.ai_model.default_model,
    )


def filter_features(
    items: list[ScoredFeature], *, product=None, tier=None, type=None, search=None,
    include_duplicates: bool = False,
) -> list[ScoredFeature]:
    """Comma-separated values match any of them; order is preserved."""
    if not include_duplicates:
        items = [i for i in items if not i.is_duplicate]
    if product:
        ps = {p.strip().lower() for p in product.split(",")}
        items = [i for i in items if i.product in ps]
    if tier:
        ts = {t.strip().upper() for t in tier.split(",")}
        items = [i for i in items if i.customer_tier in ts]
    if type:
        ts = {t.strip().lower() for t in type.split(",")}
        items = [i for i in items if i.type in ts]
    if search:
        q = search.lower()
        items = [i for i in items if q in i.title.lower()
                 or q in i.identifier.lower() or q in i.description.lower()]
    return items


def feature_summary(feature: ScoredFeature) -> dict[str, Any]:
    return feature.model_dump(exclude=LIST_EXCLUDE)


def find_feature(features: list[FeatureRequest], feature_id: str) -> FeatureRequest:
    """Look a feature up by id or by its human identifier (e.g. ``PROD-12``)."""
    for feature in features:
        if feature.id == feature_id or feature.identifier == feature_id:
            return feature
    raise NotFoundError("Feature", feature_id)


def feature_detail(session: Session, config: AppConfig, feature_id: str) -> dict[str, Any]:
    settings = load_settings(DocumentStore(session))
    sources = load_all(config)
    features = load_features(config, settings, sources)
    feature = find_feature(features, feature_id)

    store = DocumentStore(session)
    cached = AIScoreCache(session).get(feature.id)
    overrides = feature_overrides(store, feature.id)
    args = (cached, overrides, settings.weights, settings.tier_multipliers, settings.ai_model.default_model)
    scored = score_feature(feature, settings.active_framework, *args)

    return {
        **scored.model_dump(),
        "related_posts": [
            p.model_dump() for p in related_featurebase_posts(feature, sources.posts, config.thresholds)
        ],
        "related_tickets": [
            t.model_dump() for t in related_zendesk_tickets(feature, sources.tickets, config.thresholds)
        ],
        "framework_comparison": compare_frameworks(feature, *args),
        "factors": framework_factors(settings.active_framework, feature.product),
        "audit_log": feature_audit_log(store, feature.id),
        "ai_scored_at": cached.scored_at if cached else None,
        "ai_score_stale": bool(cached and cached.settings_hash != current_settings_hash(settings)),
    }


# ---------------------------------------------------------------------------
# AI scoring
# ---------------------------------------------------------------------------


def _require_provider(api_keys: dict[str, str]) -> None:
    if not available_models(api_keys):
        raise ConfigurationError(
            "No AI provider is configured. Add an OpenAI or Anthropic API key.",
            error_code="API_KEY_MISSING",
        )


def make_scorer(settings: Settings, api_keys: dict[str, str], sources: SourceData, config: AppConfig,
                model: str | None = None):
    """Async callable scoring one feature; raises when no provider produced a result."""
    async def _score(feature: FeatureRequest) -> ScoreOutcome:
        analysis = await analyze_feature(
            feature, settings, api_keys,
            related_featurebase_posts(feature, sources.posts, config.thresholds),
            related_zendesk_tickets(feature, sources.tickets, config.thresholds),
            model=model,
        )
        if not analysis.succeeded:
            raise LLMCallError("; ".join(analysis.errors) or "No scoring result", retryable=True)
        return ScoreOutcome(
            feature_id=feature.id,
            openai=analysis.successful("openai"),
            anthropic=analysis.successful("anthropic"),
            model_used=analysis.model_used,
        )
    return _score


async def score_one(
    session: Session,
    config: AppConfig,
    feature_id: str,
    model: str | None = None,
    save: bool = True,
) -> dict[str, Any]:
    """Score one feature immediately; persists the result unless ``save`` is false."""
    store = DocumentStore(session)
    settings = load_settings(store)
    api_keys = resolve_api_keys(store, config)
    _require_provider(api_keys)

    sources = load_all(config)
    feature = find_feature(load_features(config, settings, sources), feature_id)
    analysis = await analyze_feature(
        feature, settings, api_keys,
        related_featurebase_posts(feature, sources.posts, config.thresholds),
        related_zendesk_tickets(feature, sources.tickets, config.thresholds),
        model=model,
    )

    saved = False
    if save and analysis.succeeded:
        current_hash = current_settings_hash(settings)
        AIScoreCache(session).save(
            feature.id, analysis.successful("openai"), analysis.successful("anthropic"),
            current_hash, settings.active_framework, analysis.model_used,
        )
        for result in analysis.results:
            if result.error is None:
                add_usage_record(store, result.model, result.tokens_used, result.cost, feature.id)
        append_audit(
            store, action="ai_score", feature_id=feature.id,
            model=analysis.model_used, framework=settings.active_framework,
        )
        saved = True

    return {
        "feature_id": feature.id,
        "model_used": analysis.model_used,
        "openai": analysis.openai.model_dump() if analysis.openai else None,
        "anthropic": analysis.anthropic.model_dump() if analysis.anthropic else None,
        "comparison": analysis.comparison,
        "saved": saved,
    }


def _batch_loader(
    config: AppConfig,
    session_factory: Callable[[], AbstractContextManager[Session]],
    feature_ids: list[str] | None,
    force_rescore: bool,
    model: str | None,
) -> Callable[[], BatchPlan]:
    def _load() -> BatchPlan:
        with session_factory() as session:
            store = DocumentStore(session)
            settings = load_settings(store)
            api_keys = resolve_api_keys(store, config)
            current_hash = current_settings_hash(settings)
            sources = load_all(config)
            features = [f for f in load_features(config, settings, sources) if not f.is_duplicate]
            selected = select_features_to_score(
                features, AIScoreCache(session).get_map(), current_hash, feature_ids, force_rescore,
            )
        return BatchPlan(
            selected,
            make_scorer(settings, api_keys, sources, config, model),
            persist_outcome(session_factory, current_hash, settings.active_framework),
        )
    return _load


async def start_batch(
    session: Session,
    config: AppConfig,
    registry: JobRegistry,
    session_factory: Callable[[], AbstractContextManager[Session]],
    feature_ids: list[str] | None = None,
    force_rescore: bool = False,
    model: str | None = None,
) -> ScoringJob:
    """Start a background job scoring the features that need it.

    Settings, sources and cached scores are read inside the job; a failure
    there marks the job ``failed``.
    """
    _require_provider(resolve_api_keys(DocumentStore(session), config))
    job = registry.create()
    registry.spawn(run_batch_scoring(
        job,
        _batch_loader(config, session_factory, feature_ids, force_rescore, model),
        delay=config.batch_delay_seconds,
    ))
    # one loop step: the job reads its plan and sets ``total``
    await asyncio.sleep(0)
    return job


def scoring_status(session: Session, config: AppConfig) -> dict[str, Any]:
    store = DocumentStore(session)
    settings = load_settings(store)
    cache = AIScoreCache(session)
    current_hash = current_settings_hash(settings)
    features = [f for f in load_features(config, settings) if not f.is_duplicate]
    return {
        **cache.status(),
        "current_settings_hash": current_hash,
        "is_stale": cache.is_stale(current_hash),
        "staleness": cache.staleness((f.id for f in features), current_hash),
        "total_features": len(features),
        "available_models": available_models(resolve_api_keys(store, config)),
        "usage_today": today_usage(store),
    }


def clear_scores(session: Session) -> None:
    AIScoreCache(session).clear_all()


def clear_feature_score(session: Session, config: AppConfig, feature_id: str) -> bool:
    """Drop one feature's cached AI score; False when it had none."""
    feature = find_feature(load_features(config, load_settings(DocumentStore(session))), feature_id)
    cache = AIScoreCache(session)
    had_score = cache.get(feature.id) is not None
    cache.clear([feature.id])
    return had_score


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def settings_payload(session: Session, config: AppConfig) -> dict[str, Any]:
    store = DocumentStore(session)
    keys = resolve_api_keys(store, config)
    return {
        "settings": load_settings(store).model_dump(),
        "frameworks": [framework_info(f) for f in FRAMEWORKS],
        "projects": [p.model_dump() for p in load_linear_projects(config)],
        "api_keys": {
            name: {"configured": bool(key), "masked": mask_key(key)} for name, key in keys.items()
        },
        "available_models": available_models(keys),
        "usage": usage_stats(store),
    }


# ---------------------------------------------------------------------------
# Linear
# ---------------------------------------------------------------------------


def _linear_client(store: DocumentStore, config: AppConfig, transport: httpx.AsyncBaseTransport | None):
    return LinearClient(resolve_api_keys(store, config)["linear"], transport=transport)


async def pull_from_linear(
    session: Session, config: AppConfig, transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Refresh the local issue and project snapshots from Linear."""
    client = _linear_client(DocumentStore(session), config, transport)
    issues, projects = await client.fetch_icebox_issues()
    synced_at = save_linear_snapshot(config, issues, projects)
    return {
        "success": True,
        "issues_count": len(issues),
        "projects_count": len(projects),
        "projects": [p.name for p in projects],
        "last_synced": synced_at,
    }


async def push_to_linear(
    session: Session,
    config: AppConfig,
    body: LinearSyncIn,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Write priorities for the selected canonical features back to Linear."""
    store = DocumentStore(session)
    client = _linear_client(store, config, transport)
    settings = load_settings(store)
    scored = [f for f in score_features(session, settings, load_features(config, settings)) if not f.is_duplicate]
    if body.feature_ids is not None:
        wanted = set(body.feature_ids)
        scored = [f for f in scored if f.id in wanted]
    if body.product:
        scored = [f for f in scored if f.product == body.product]
    result = await sync_features(client, scored, body.add_comments, config.sync_delay_seconds, store)
    log.info("Linear sync: %d updated, %d failed", result["success"], result["failed"])
    return result


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session, config: AppConfig) -> dict[str, Any]:
    settings = load_settings(DocumentStore(session))
    sources = load_all(config)
    features = load_features(config, settings, sources)
    scored = score_features(session, settings, features)
    canonical = [f for f in scored if not f.is_duplicate]
    cache = AIScoreCache(session)
    staleness = cache.staleness((f.id for f in canonical), current_settings_hash(settings))

    by_product: Counter[str] = Counter({p: 0 for p in ALL_PRODUCTS})
    by_tier: Counter[str] = Counter({t: 0 for t in ALL_TIERS})
    by_priority: Counter[str] = Counter({str(p): 0 for p in (1, 2, 3, 4)})
    for f in canonical:
        by_product[f.product] += 1
        by_tier[f.customer_tier] += 1
        by_priority[str(f.mapped_priority)] += 1

    return {
        "total_features": len(canonical),
        "duplicates": len(scored) - len(canonical),
        "by_product": dict(by_product),
        "by_priority": dict(by_priority),
        "by_tier": dict(by_tier),
        "ai_scored": staleness["scored_with_current"] + staleness["stale"],
        "stale_scores": staleness["stale"],
        "last_synced": sources.last_synced,
        "top_features": [
            {"id": f.id, "identifier": f.identifier, "title": f.title, "final_score": f.final_score}
            for f in canonical[:10]
        ],
    }
