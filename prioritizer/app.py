from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from prioritizer import services
from prioritizer.config import AppConfig, get_config
from prioritizer.db import get_session, init_db, session_scope
from prioritizer.errors import ConfigurationError, NotFoundError
from prioritizer.frameworks import MOSCOW_SCORES
from prioritizer.jobs import JobRegistry
from prioritizer.linear import TrackerError
from prioritizer.overrides import clear_feature_overrides, remove_override, set_override
from prioritizer.schemas import LinearSyncIn, OverrideIn, ScoreAllIn, ScoreFeatureIn, StatsOut
from prioritizer.score_cache import AIScoreCache
from prioritizer.settings import apply_command, current_settings_hash, parse_command, set_api_key
from prioritizer.store import DocumentStore

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.jobs = JobRegistry(get_config().job_ttl_seconds)
    app.state.session_factory = session_scope
    yield


app = FastAPI(
    title="Prioritizer",
    version="0.1.0",
    description=(
        "Feature prioritization API. Correlates Linear backlog issues with Featurebase "
        "posts and Zendesk tickets, scores them with configurable frameworks and "
        "LLM-suggested factor scores, and writes priorities back to Linear."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Features", "description": "Browse correlated, scored feature requests."},
        {"name": "Overrides", "description": "Manual factor scores that win over AI suggestions."},
        {"name": "Scoring", "description": "LLM factor scoring. Requires an OpenAI or Anthropic key."},
        {"name": "Settings", "description": "Framework, weights, prompts and API keys."},
        {"name": "Linear", "description": "Pull backlog snapshots and push priorities."},
        {"name": "Stats", "description": "Aggregate statistics and breakdowns."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def app_config() -> AppConfig:
    return get_config()


def job_registry(request: Request) -> JobRegistry:
    registry = getattr(request.app.state, "jobs", None)
    if registry is None:
        registry = request.app.state.jobs = JobRegistry(get_config().job_ttl_seconds)
    return registry


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "errorCode": exc.error_code})


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    status = 401 if exc.error_code in ("API_KEY_MISSING", "API_KEY_ERROR") else 502
    return JSONResponse(status_code=status, content={"detail": str(exc), "errorCode": exc.error_code})


# ---------------------------------------------------------------------------
# Routes: Features
# ---------------------------------------------------------------------------


class FeatureListResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int
    framework: str


@app.get("/api/features", response_model=FeatureListResponse,
         tags=["Features"], summary="List scored features with filtering and pagination")
async def list_features(
    product: str | None = None,
    tier: str | None = None,
    type: str | None = None,
    search: str | None = None,
    include_duplicates: bool = False,
    page: int = Query(1, ge=1),
    per_page: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    settings = services.load_settings(DocumentStore(session))
    scored = services.score_features(session, settings, services.load_features(config, settings))
    items = services.filter_features(
        scored, product=product, tier=tier, type=type, search=search,
        include_duplicates=include_duplicates,
    )
    start = (page - 1) * per_page
    return {
        "items": [services.feature_summary(f) for f in items[start:start + per_page]],
        "total": len(items),
        "framework": settings.active_framework,
    }


@app.get("/api/features/{feature_id}", tags=["Features"],
         summary="Get one feature with breakdown, related posts and tickets")
async def get_feature(
    feature_id: str,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    return services.feature_detail(session, config, feature_id)


# ---------------------------------------------------------------------------
# Routes: Overrides
# ---------------------------------------------------------------------------


def _feature_or_404(session: Session, config: AppConfig, feature_id: str):
    settings = services.load_settings(DocumentStore(session))
    return services.find_feature(services.load_features(config, settings), feature_id)


@app.post("/api/features/{feature_id}/overrides", tags=["Overrides"],
          summary="Set a manual score for one factor")
async def create_override(
    feature_id: str,
    body: OverrideIn,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    feature = _feature_or_404(session, config, feature_id)
    if body.factor == "moscow":
        if body.value not in MOSCOW_SCORES:
            raise HTTPException(400, f"MoSCoW override must be one of {', '.join(MOSCOW_SCORES)}")
    elif isinstance(body.value, str) or not 1 <= body.value <= 10:
        raise HTTPException(400, "Override value must be a number between 1 and 10")
    return set_override(
        DocumentStore(session), feature.id, body.factor, body.value, body.updated_by, body.reason,
    )


@app.delete("/api/features/{feature_id}/overrides/{factor}", tags=["Overrides"],
            summary="Remove a manual factor score")
async def delete_override(
    feature_id: str,
    factor: str,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    feature = _feature_or_404(session, config, feature_id)
    if not remove_override(DocumentStore(session), feature.id, factor):
        raise HTTPException(404, f"No override for {factor}")
    return {"ok": True}


@app.delete("/api/features/{feature_id}/overrides", tags=["Overrides"],
            summary="Remove every manual score for one feature")
async def delete_feature_overrides(
    feature_id: str,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    feature = _feature_or_404(session, config, feature_id)
    return {"ok": True, "removed": clear_feature_overrides(DocumentStore(session), feature.id)}


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.post("/api/ai/score/{feature_id}", tags=["Scoring"], summary="Score a single feature via LLM")
async def score_feature(
    feature_id: str,
    body: ScoreFeatureIn | None = None,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    body = body or ScoreFeatureIn()
    return await services.score_one(session, config, feature_id, body.model, body.save)


@app.delete("/api/ai/score/{feature_id}", tags=["Scoring"], summary="Drop the cached AI score of one feature")
async def clear_feature_score(
    feature_id: str,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    return {"ok": True, "cleared": services.clear_feature_score(session, config, feature_id)}


@app.post("/api/ai/score-all", tags=["Scoring"], status_code=202,
          summary="Start a background batch scoring job")
async def start_score_all(
    request: Request,
    body: ScoreAllIn | None = None,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
    registry: JobRegistry = Depends(job_registry),
):
    body = body or ScoreAllIn()
    factory = getattr(request.app.state, "session_factory", session_scope)
    job = await services.start_batch(
        session, config, registry, factory, body.feature_ids, body.force_rescore, body.model,
    )
    log.info("Started scoring job %s for %d features", job.id, job.total)
    return {"job_id": job.id, "total": job.total, "status": job.status}


@app.get("/api/ai/score-all", tags=["Scoring"],
         summary="Poll a batch job, or get cache status when no job id is given")
async def score_all_status(
    job_id: str | None = None,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
    registry: JobRegistry = Depends(job_registry),
):
    if job_id:
        return registry.get(job_id).to_dict()
    return services.scoring_status(session, config)


@app.delete("/api/ai/score-all", tags=["Scoring"],
            summary="Cancel a batch job, or clear every cached AI score")
async def cancel_or_clear(
    job_id: str | None = None,
    clear_scores: bool = False,
    session: Session = Depends(db_session),
    registry: JobRegistry = Depends(job_registry),
):
    if job_id:
        job = registry.cancel(job_id)
        return {"ok": True, "job_id": job.id, "status": job.status}
    if clear_scores:
        services.clear_scores(session)
        return {"ok": True, "cleared": True}
    raise HTTPException(400, "Provide job_id or clear_scores=true")


# ---------------------------------------------------------------------------
# Routes: Settings
# ---------------------------------------------------------------------------


@app.get("/api/settings", tags=["Settings"], summary="Get settings, frameworks and key status")
async def get_settings(session: Session = Depends(db_session), config: AppConfig = Depends(app_config)):
    return services.settings_payload(session, config)


@app.post("/api/settings", tags=["Settings"], summary="Apply one settings command")
async def update_settings(body: dict[str, Any], session: Session = Depends(db_session)):
    try:
        command = parse_command(body)
    except ValidationError as exc:
        raise HTTPException(400, exc.errors(include_url=False, include_context=False)) from exc
    settings = apply_command(DocumentStore(session), command)
    current_hash = current_settings_hash(settings)
    return {
        "success": True,
        "settings": settings.model_dump(),
        "settings_hash": current_hash,
        "ai_scores_stale": AIScoreCache(session).is_stale(current_hash),
    }


class ApiKeyIn(BaseModel):
    provider: str
    key: str | None = None


@app.post("/api/settings/api-keys", tags=["Settings"], summary="Store or remove a provider API key")
async def update_api_key(body: ApiKeyIn, session: Session = Depends(db_session)):
    try:
        set_api_key(DocumentStore(session), body.provider, body.key)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Linear
# ---------------------------------------------------------------------------


@app.post("/api/linear/sync", tags=["Linear"], summary="Write scores back to Linear as priorities")
async def linear_sync(
    body: LinearSyncIn | None = None,
    session: Session = Depends(db_session),
    config: AppConfig = Depends(app_config),
):
    return await services.push_to_linear(session, config, body or LinearSyncIn())


@app.post("/api/sync", tags=["Linear"], summary="Pull icebox issues from Linear into the local snapshot")
async def pull_sync(session: Session = Depends(db_session), config: AppConfig = Depends(app_config)):
    return await services.pull_from_linear(session, config)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics and breakdowns")
async def get_stats(session: Session = Depends(db_session), config: AppConfig = Depends(app_config)):
    return services.compute_stats(session, config)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("prioritizer.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
