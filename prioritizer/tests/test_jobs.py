"""Tests for batch scoring jobs: state machine, cancellation, failures, registry."""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from prioritizer.errors import NotFoundError
from prioritizer.jobs import (
    BatchPlan,
    JobRegistry,
    ScoreOutcome,
    ScoringJob,
    persist_outcome,
    run_batch_scoring,
    select_features_to_score,
)
from prioritizer.models import Base
from prioritizer.overrides import audit_log
from prioritizer.schemas import AIModelResult, AISuggestion, FeatureRequest, StoredAIScore
from prioritizer.score_cache import AIScoreCache
from prioritizer.store import DocumentStore
from prioritizer.usage import usage_stats
from prioritizer.utils import utc_now


def _features(n: int) -> list[FeatureRequest]:
    return [
        FeatureRequest(
            id=f"f{i}", identifier=f"PROD-{i}", title=f"Feature {i}", product="chat",
            customer_tier="C3", created_at="2024-01-01T00:00:00Z", updated_at="2024-01-01T00:00:00Z",
        )
        for i in range(n)
    ]


def _outcome(feature: FeatureRequest) -> ScoreOutcome:
    return ScoreOutcome(
        feature_id=feature.id,
        anthropic=AIModelResult(
            model="anthropic",
            suggestions=[AISuggestion(factor="revenueImpact", score=6)],
            total_score=6, tokens_used=100, cost=0.001,
        ),
    )


class Recorder:
    def __init__(self):
        self.saved: list[str] = []

    def __call__(self, outcome: ScoreOutcome) -> None:
        self.saved.append(outcome.feature_id)


def _plan(features, scorer, persist=None):
    return lambda: BatchPlan(features, scorer, persist if persist is not None else Recorder())


class TestRunBatchScoring:
    @pytest.mark.asyncio
    async def test_completes(self):
        job = ScoringJob(id="j", total=0)
        persist = Recorder()
        await run_batch_scoring(job, _plan(_features(3), AsyncMock(side_effect=_outcome), persist), delay=0)
        assert job.status == "completed"
        assert job.total == 3
        assert job.progress == 3
        assert job.results_saved == 3
        assert job.completed_at is not None
        assert job.current_feature == ""
        assert persist.saved == ["f0", "f1", "f2"]

    @pytest.mark.asyncio
    async def test_cancel_after_two(self):
        job = ScoringJob(id="j", total=0)
        persist = Recorder()
        calls = []

        async def scorer(feature):
            calls.append(feature.id)
            if len(calls) == 2:
                job.cancel_requested = True
            return _outcome(feature)

        await run_batch_scoring(job, _plan(_features(5), scorer, persist), delay=0)
        assert job.status == "cancelled"
        assert job.progress == 2
        assert calls == ["f0", "f1"]
        assert persist.saved == ["f0", "f1"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_fail_job(self):
        job = ScoringJob(id="j", total=0)
        persist = Recorder()

        async def scorer(feature):
            if feature.id == "f4":
                raise RuntimeError("provider timeout")
            return _outcome(feature)

        await run_batch_scoring(job, _plan(_features(10), scorer, persist), delay=0)
        assert job.status == "completed"
        assert job.progress == 10
        assert job.results_saved == 9
        assert job.failed_ids == ["f4"]
        assert "f4" not in persist.saved

    @pytest.mark.asyncio
    async def test_persist_failure_is_per_item(self):
        job = ScoringJob(id="j", total=0)

        def persist(outcome):
            if outcome.feature_id == "f0":
                raise OSError("disk full")

        await run_batch_scoring(job, _plan(_features(2), AsyncMock(side_effect=_outcome), persist), delay=0)
        assert job.status == "completed"
        assert job.results_saved == 1
        assert job.failed_ids == ["f0"]

    @pytest.mark.asyncio
    async def test_load_failure_fails_job(self):
        job = ScoringJob(id="j", total=0)

        def load_plan():
            raise ValueError("corrupt ai_scores row for f2")

        await run_batch_scoring(job, load_plan, delay=0)
        assert job.status == "failed"
        assert job.error == "corrupt ai_scores row for f2"
        assert job.completed_at is not None
        assert job.progress == 0

    @pytest.mark.asyncio
    async def test_empty_batch_completes(self):
        job = ScoringJob(id="j", total=0)
        await run_batch_scoring(job, _plan([], AsyncMock()), delay=0)
        assert job.status == "completed"
        assert job.progress == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_finishes_job(self):
        registry = JobRegistry(ttl_seconds=60)
        job = registry.create()
        persist = Recorder()

        async def slow_scorer(feature):
            await asyncio.sleep(10)
            return _outcome(feature)

        task = registry.spawn(run_batch_scoring(job, _plan(_features(3), slow_scorer, persist), delay=0))
        await asyncio.sleep(0)
        assert job.current_feature == "PROD-0: Feature 0"
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert job.status == "cancelled"
        assert job.completed_at is not None
        assert job.current_feature == ""
        assert persist.saved == []
        job.completed_at = utc_now() - timedelta(seconds=120)
        assert registry.reap() == 1
        assert len(registry) == 0


class TestScoringJob:
    def test_terminal_state_is_final(self):
        job = ScoringJob(id="j", total=1)
        job.finish("cancelled")
        job.finish("completed")
        assert job.status == "cancelled"

    def test_to_dict(self):
        data = ScoringJob(id="j", total=4).to_dict()
        assert data["status"] == "running"
        assert data["progress"] == 0
        assert data["completed_at"] is None
        assert isinstance(data["started_at"], str)


class TestJobRegistry:
    def test_create_and_get(self):
        registry = JobRegistry()
        job = registry.create(3)
        assert registry.get(job.id) is job
        assert job.status == "running"
        assert job.total == 3

    def test_unknown_job(self):
        with pytest.raises(NotFoundError):
            JobRegistry().get("missing")

    def test_cancel_is_idempotent_and_accepted_when_finished(self):
        registry = JobRegistry()
        job = registry.create(1)
        registry.cancel(job.id)
        registry.cancel(job.id)
        assert job.cancel_requested
        job.finish("completed")
        assert registry.cancel(job.id).status == "completed"

    def test_reaps_old_terminal_jobs_only(self):
        registry = JobRegistry(ttl_seconds=60)
        old, running = registry.create(1), registry.create(1)
        old.finish("completed")
        old.completed_at = utc_now() - timedelta(seconds=120)
        assert registry.reap() == 1
        with pytest.raises(NotFoundError):
            registry.get(old.id)
        assert registry.get(running.id) is running
        assert len(registry) == 1


class TestSelectFeatures:
    def _cached(self, fid: str, h: str) -> StoredAIScore:
        return StoredAIScore(feature_id=fid, scored_at="", settings_hash=h)

    def test_skips_current_hash(self):
        cached = {"f0": self._cached("f0", "h1"), "f1": self._cached("f1", "old")}
        selected = select_features_to_score(_features(3), cached, "h1")
        assert [f.id for f in selected] == ["f1", "f2"]

    def test_force_rescore(self):
        cached = {"f0": self._cached("f0", "h1")}
        assert len(select_features_to_score(_features(3), cached, "h1", force_rescore=True)) == 3

    def test_explicit_ids_keep_input_order(self):
        selected = select_features_to_score(_features(4), {}, "h1", feature_ids=["f3", "f1"])
        assert [f.id for f in selected] == ["f1", "f3"]


class TestPersistOutcome:
    def test_writes_cache_usage_and_audit(self):
        eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
        Base.metadata.create_all(eng)
        factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)

        @contextmanager
        def session_scope():
            sess = factory()
            try:
                yield sess
            finally:
                sess.close()

        persist = persist_outcome(session_scope, "h1", "weighted")
        persist(_outcome(_features(1)[0]))

        with session_scope() as sess:
            entry = AIScoreCache(sess).get("f0")
            assert entry.settings_hash == "h1"
            store = DocumentStore(sess)
            assert usage_stats(store)["total_tokens"] == 100
            assert [e["action"] for e in audit_log(store)] == ["ai_score"]
