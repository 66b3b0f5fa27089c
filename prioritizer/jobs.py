"""Background batch scoring jobs.

A job walks its features strictly in order, one external call at a time,
with a fixed pause between items. Cancellation is cooperative and observed
at the start of each item. Jobs live in a :class:`JobRegistry` owned by the
app; terminal jobs are dropped once older than the registry TTL.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from contextlib import AbstractContextManager
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Literal

from prioritizer.errors import NotFoundError
from prioritizer.schemas import AIModelResult, FeatureRequest, StoredAIScore
from prioritizer.utils import utc_now

log = logging.getLogger(__name__)

JobStatus = Literal["running", "completed", "failed", "cancelled"]
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


@dataclass
class ScoreOutcome:
    """Result of scoring one feature, ready to persist."""
    feature_id: str
    openai: AIModelResult | None = None
    anthropic: AIModelResult | None = None
    model_used: str = "anthropic"


@dataclass
class ScoringJob:
    id: str
    total: int
    status: JobStatus = "running"
    progress: int = 0
    current_feature: str = ""
    error: str | None = None
    started_at: Any = field(default_factory=utc_now)
    completed_at: Any = None
    cancel_requested: bool = False
    results_saved: int = 0
    failed_ids: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: JobStatus, error: str | None = None) -> None:
        """Move a running job to a terminal state; terminal jobs never change."""
        if self.is_terminal:
            return
        self.status = status
        self.error = error
        self.completed_at = utc_now()
        self.current_feature = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        return data


class JobRegistry:
    """In-process job store with TTL eviction of finished jobs."""

    def __init__(self, ttl_seconds: float = 3600):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._jobs: dict[str, ScoringJob] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()

    def create(self, total: int = 0) -> ScoringJob:
        self.reap()
        job = ScoringJob(id=uuid.uuid4().hex, total=total)
        with self._lock:
            self._jobs[job.id] = job
        log.info("Created scoring job %s", job.id)
        return job

    def get(self, job_id: str) -> ScoringJob:
        self.reap()
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    def cancel(self, job_id: str) -> ScoringJob:
        """Request cancellation; accepted for jobs that already finished."""
        job = self.get(job_id)
        job.cancel_requested = True
        return job

    def reap(self) -> int:
        cutoff = utc_now() - self.ttl
        with self._lock:
            expired = [
                jid for jid, j in self._jobs.items()
                if j.is_terminal and j.completed_at is not None and j.completed_at < cutoff
            ]
            for jid in expired:
                del self._jobs[jid]
        if expired:
            log.debug("Reaped %d finished jobs", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run a job coroutine on the current loop, holding a reference until it ends."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def select_features_to_score(
    features: Iterable[FeatureRequest],
    cached: Mapping[str, StoredAIScore],
    current_hash: str,
    feature_ids: Iterable[str] | None = None,
    force_rescore: bool = False,
) -> list[FeatureRequest]:
    """Features to send for scoring, in input order.

    Unless ``force_rescore``, features already scored under ``current_hash``
    are skipped.
    """
    selected = list(features)
    if feature_ids is not None:
        wanted = set(feature_ids)
        selected = [f for f in selected if f.id in wanted]
    if not force_rescore:
        selected = [
            f for f in selected
            if f.id not in cached or cached[f.id].settings_hash != current_hash
        ]
    return selected


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


Scorer = Callable[[FeatureRequest], Awaitable[ScoreOutcome]]
Persist = Callable[[ScoreOutcome], None]


@dataclass
class BatchPlan:
    """Everything a job needs once settings, sources and the cache are read."""
    features: list[FeatureRequest]
    scorer: Scorer
    persist: Persist


async def run_batch_scoring(
    job: ScoringJob,
    load_plan: Callable[[], BatchPlan],
    delay: float = 1.0,
) -> ScoringJob:
    """Load the batch, then score its features one by one, updating ``job``.

    Args:
        job: A freshly created, running job. ``total`` is set from the plan.
        load_plan: Reads settings, sources and cached scores and returns the
            :class:`BatchPlan`. Anything it raises fails the job.
        delay: Seconds to pause between items.

    The plan's ``scorer`` may raise to skip one feature; its ``persist``
    writes one outcome (cache entry, usage, audit) per item so completed work
    survives cancellation.
    """
    try:
        plan = load_plan()
        features = plan.features
        job.total = len(features)
        for index, feature in enumerate(features):
            if job.cancel_requested:
                log.info("Job %s cancelled after %d of %d features", job.id, job.progress, job.total)
                job.finish("cancelled")
                return job
            job.current_feature = f"{feature.identifier}: {feature.title}"
            try:
                outcome = await plan.scorer(feature)
                plan.persist(outcome)
                job.results_saved += 1
            except Exception as exc:
                log.warning("Scoring %s failed, skipping: %s", feature.identifier, exc)
                job.failed_ids.append(feature.id)
            job.progress += 1
            if delay and index < len(features) - 1:
                await asyncio.sleep(delay)
    except asyncio.CancelledError:
        log.info("Job %s task cancelled after %d of %d features", job.id, job.progress, job.total)
        job.finish("cancelled")
        raise
    except Exception as exc:
        log.exception("Job %s failed", job.id)
        job.finish("failed", error=str(exc))
        return job

    if job.cancel_requested:
        job.finish("cancelled")
    else:
        job.progress = job.total
        job.finish("completed")
    log.info(
        "Job %s %s: %d saved, %d failed", job.id, job.status, job.results_saved, len(job.failed_ids),
    )
    return job


def persist_outcome(
    session_factory: Callable[[], AbstractContextManager[Any]],
    current_hash: str,
    framework: str,
) -> Persist:
    """Build a ``persist`` callable that writes each outcome in a fresh session."""
    from prioritizer.overrides import append_audit
    from prioritizer.score_cache import AIScoreCache
    from prioritizer.store import DocumentStore
    from prioritizer.usage import add_usage_record

    def _persist(outcome: ScoreOutcome) -> None:
        with session_factory() as session:
            AIScoreCache(session).save(
                outcome.feature_id, outcome.openai, outcome.anthropic,
                current_hash, framework, outcome.model_used,
            )
            store = DocumentStore(session)
            for result in (outcome.openai, outcome.anthropic):
                if result is not None and result.error is None:
                    add_usage_record(store, result.model, result.tokens_used, result.cost, outcome.feature_id)
            append_audit(
                store, action="ai_score", feature_id=outcome.feature_id,
                model=outcome.model_used, framework=framework,
            )

    return _persist
