"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database and snapshot files written to a
temporary data directory.
"""
from __future__ import annotations

import asyncio
import json
import time
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from prioritizer.config import AppConfig, get_config
from prioritizer.jobs import ScoreOutcome
from prioritizer.llm import AnalysisResult
from prioritizer.models import Base
from prioritizer.schemas import AIModelResult, AISuggestion


def _issue(iid: str, title: str, project: str, labels: list[str], description: str = "",
           state_type: str = "backlog", **extra) -> dict:
    return {
        "id": iid,
        "identifier": f"PROD-{iid[1:]}",
        "title": title,
        "description": description,
        "url": f"https://linear.app/acme/issue/PROD-{iid[1:]}",
        "state": {"id": "s", "name": state_type.title(), "type": state_type},
        "priority": 0,
        "labels": {"nodes": [{"id": f"l-{n}", "name": n} for n in labels]},
        "project": {"id": f"p-{project[:8]}", "name": project},
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-01-02T00:00:00Z",
        "sortOrder": 1.0,
        **extra,
    }


ISSUES = [
    _issue("i1", "Single sign-on with Okta", "Product Icebox (In-app Messaging)",
           ["Customer Priority → C1"], "Enterprise customers need SAML login through Okta"),
    _issue("i2", "Dark mode for widget", "Product Icebox (Voice & Video Calling)", ["C3"],
           attachments={"nodes": [{"id": "a1", "url": "https://acme.featurebase.app/p/post-456"}]}),
    _issue("i3", "Export conversation transcripts", "Product Icebox (In-app Messaging)", [],
           state_type="started"),
    _issue("i4", "Agent handoff to human", "Product Icebox (AI Agents)", []),
]

POSTS = [
    {"id": "post-456", "title": "Dark mode for widget", "content": "Dark theme please",
     "upvotes": 7, "url": "https://acme.featurebase.app/p/post-456"},
]

TICKETS = [
    {"id": "t1", "subject": "Okta single sign-on", "description": "Customer asks for SAML login with Okta"},
]


def _write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture()
def app_config_for_tests(tmp_path, monkeypatch):
    monkeypatch.setenv("PRIORITIZER_HOME", str(tmp_path))
    for var in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "LINEAR_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    get_config.cache_clear()

    config = AppConfig(project_root=tmp_path, data_dir=tmp_path / "data", batch_delay_seconds=0)
    _write(config.linear_issues_file, {"issues": ISSUES, "syncedAt": "2024-01-03T00:00:00Z"})
    _write(config.linear_projects_file, {"projects": [{"id": "p-Product ", "name": "Product Icebox"}]})
    _write(config.featurebase_posts_file, {"posts": POSTS})
    _write(config.zendesk_tickets_file, {"tickets": TICKETS})
    yield config
    get_config.cache_clear()


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, app_config_for_tests):
    _, TestSession = test_db
    from prioritizer.app import app, app_config, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def test_session_scope():
        session = TestSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[app_config] = lambda: app_config_for_tests
    with TestClient(app, raise_server_exceptions=True) as c:
        app.state.session_factory = test_session_scope
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def keyed_client(client):
    resp = client.post("/api/settings/api-keys", json={"provider": "anthropic", "key": "sk-ant-test-key"})
    assert resp.status_code == 200
    return client


def _anthropic_result(score: float = 7) -> AIModelResult:
    return AIModelResult(
        model="anthropic",
        suggestions=[AISuggestion(factor="revenueImpact", score=score, reasoning="Enterprise pull")],
        total_score=score, summary="Worth doing", tokens_used=900, cost=0.004,
    )


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------


class TestFeatureEndpoints:
    def test_list_backlog_only(self, client):
        resp = client.get("/api/features")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 3
        assert data["framework"] == "weighted"
        assert {item["id"] for item in data["items"]} == {"i1", "i2", "i4"}
        assert "description" not in data["items"][0]

    def test_list_is_sorted_by_score(self, client):
        scores = [item["final_score"] for item in client.get("/api/features").json()["items"]]
        assert scores == sorted(scores, reverse=True)

    def test_filters(self, client):
        assert [i["id"] for i in client.get("/api/features?product=calling").json()["items"]] == ["i2"]
        assert [i["id"] for i in client.get("/api/features?tier=c1").json()["items"]] == ["i1"]
        assert [i["id"] for i in client.get("/api/features?search=okta").json()["items"]] == ["i1"]
        assert client.get("/api/features?product=byoa").json()["total"] == 0

    def test_pagination(self, client):
        data = client.get("/api/features?per_page=2&page=2").json()
        assert data["total"] == 3
        assert len(data["items"]) == 1

    def test_detail(self, client):
        resp = client.get("/api/features/i2")
        assert resp.status_code == 200
        data = resp.json()
        assert data["product"] == "calling"
        assert data["customer_tier"] == "C3"
        assert data["featurebase_upvotes"] == 7
        assert data["related_posts"][0]["id"] == "post-456"
        assert set(data["framework_comparison"]) == {"weighted", "rice", "ice", "value-effort", "moscow"}
        assert data["ai_scored_at"] is None
        assert data["ai_score_stale"] is False

    def test_detail_by_identifier(self, client):
        data = client.get("/api/features/PROD-1").json()
        assert data["id"] == "i1"
        assert data["support_ticket_count"] == 1
        assert data["related_tickets"][0]["id"] == "t1"

    def test_detail_not_found(self, client):
        resp = client.get("/api/features/nope")
        assert resp.status_code == 404

    def test_filtered_issue_is_not_found(self, client):
        assert client.get("/api/features/i3").status_code == 404


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


class TestOverrideEndpoints:
    def test_set_override_changes_score(self, client):
        resp = client.post("/api/features/i1/overrides", json={"factor": "revenueImpact", "value": 10})
        assert resp.status_code == 200
        detail = client.get("/api/features/i1").json()
        assert detail["scores"]["revenueImpact"] == 10
        assert detail["manual_overrides"] == {"revenueImpact": 10}
        assert detail["audit_log"][0]["action"] == "manual_override"

    def test_out_of_range_rejected(self, client):
        resp = client.post("/api/features/i1/overrides", json={"factor": "effort", "value": 11})
        assert resp.status_code == 400

    def test_value_must_be_a_number_from_one_to_ten(self, client):
        for value in (0, 11, "8"):
            resp = client.post("/api/features/i1/overrides", json={"factor": "effort", "value": value})
            assert resp.status_code == 400, value
        assert client.post("/api/features/i1/overrides", json={"factor": "effort", "value": 1}).status_code == 200

    def test_moscow_takes_a_category(self, client):
        assert client.post("/api/features/i1/overrides", json={"factor": "moscow", "value": "urgent"}).status_code == 400
        assert client.post("/api/features/i1/overrides", json={"factor": "moscow", "value": 8}).status_code == 400
        assert client.post("/api/features/i1/overrides", json={"factor": "moscow", "value": "must"}).status_code == 200
        assert client.get("/api/features/i1").json()["manual_overrides"] == {"moscow": "must"}

    def test_unknown_feature(self, client):
        resp = client.post("/api/features/nope/overrides", json={"factor": "effort", "value": 3})
        assert resp.status_code == 404

    def test_delete_override(self, client):
        client.post("/api/features/i1/overrides", json={"factor": "effort", "value": 3})
        assert client.delete("/api/features/i1/overrides/effort").status_code == 200
        assert client.delete("/api/features/i1/overrides/effort").status_code == 404

    def test_delete_all_overrides_for_feature(self, client):
        client.post("/api/features/i1/overrides", json={"factor": "effort", "value": 3})
        client.post("/api/features/i1/overrides", json={"factor": "revenueImpact", "value": 9})
        client.post("/api/features/i2/overrides", json={"factor": "effort", "value": 5})
        resp = client.delete("/api/features/i1/overrides")
        assert resp.json() == {"ok": True, "removed": 2}
        assert client.get("/api/features/i1").json()["manual_overrides"] == {}
        assert client.get("/api/features/i2").json()["manual_overrides"] == {"effort": 5}
        assert client.delete("/api/features/nope/overrides").status_code == 404


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScoringEndpoints:
    def test_score_without_keys(self, client):
        resp = client.post("/api/ai/score/i1")
        assert resp.status_code == 400
        assert resp.json()["errorCode"] == "API_KEY_MISSING"

    def test_score_all_without_keys(self, client):
        assert client.post("/api/ai/score-all").status_code == 400

    def test_score_one_saves(self, keyed_client):
        analysis = AnalysisResult(anthropic=_anthropic_result(), model_used="anthropic")
        with patch("prioritizer.services.analyze_feature", AsyncMock(return_value=analysis)) as mock:
            resp = keyed_client.post("/api/ai/score/i1", json={"model": "anthropic"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["saved"] is True
        assert data["anthropic"]["total_score"] == 7
        assert mock.await_args.kwargs["model"] == "anthropic"

        detail = keyed_client.get("/api/features/i1").json()
        assert detail["ai_scored_at"]
        assert detail["ai_score_stale"] is False
        assert detail["ai_suggestions"]["anthropic"]["summary"] == "Worth doing"

        status = keyed_client.get("/api/ai/score-all").json()
        assert status["total_scored"] == 1
        assert status["usage_today"]["tokens"] == 900
        assert status["available_models"] == ["anthropic"]

    def test_failed_analysis_not_saved(self, keyed_client):
        failed = AIModelResult(model="anthropic", summary="Anthropic API error: boom", error="API_ERROR")
        analysis = AnalysisResult(anthropic=failed, model_used="anthropic")
        with patch("prioritizer.services.analyze_feature", AsyncMock(return_value=analysis)):
            data = keyed_client.post("/api/ai/score/i1").json()
        assert data["saved"] is False
        assert data["anthropic"]["error"] == "API_ERROR"
        assert keyed_client.get("/api/ai/score-all").json()["total_scored"] == 0

    def test_stale_after_settings_change(self, keyed_client):
        analysis = AnalysisResult(anthropic=_anthropic_result(), model_used="anthropic")
        with patch("prioritizer.services.analyze_feature", AsyncMock(return_value=analysis)):
            keyed_client.post("/api/ai/score/i1")
        keyed_client.post("/api/settings", json={"action": "setFramework", "framework": "rice"})
        assert keyed_client.get("/api/features/i1").json()["ai_score_stale"] is True
        assert keyed_client.get("/api/ai/score-all").json()["is_stale"] is True

    def test_batch_job_runs_to_completion(self, keyed_client):
        async def scorer(feature):
            await asyncio.sleep(0)
            return ScoreOutcome(feature_id=feature.id, anthropic=_anthropic_result(), model_used="anthropic")

        with patch("prioritizer.services.make_scorer", return_value=scorer):
            resp = keyed_client.post("/api/ai/score-all", json={})
            assert resp.status_code == 202
            started = resp.json()
            assert started["total"] == 3
            assert started["status"] == "running"

            job = None
            for _ in range(100):
                job = keyed_client.get(f"/api/ai/score-all?job_id={started['job_id']}").json()
                if job["status"] != "running":
                    break
                time.sleep(0.05)

        assert job["status"] == "completed"
        assert job["progress"] == 3
        assert job["results_saved"] == 3
        status = keyed_client.get("/api/ai/score-all").json()
        assert status["total_scored"] == 3
        assert status["staleness"]["unscored"] == 0

    def test_batch_job_fails_when_cache_unreadable(self, keyed_client):
        with patch("prioritizer.services.AIScoreCache.get_map", side_effect=ValueError("corrupt ai_scores row")):
            resp = keyed_client.post("/api/ai/score-all", json={})
        assert resp.status_code == 202
        job = keyed_client.get(f"/api/ai/score-all?job_id={resp.json()['job_id']}").json()
        assert job["status"] == "failed"
        assert job["error"] == "corrupt ai_scores row"
        assert job["progress"] == 0

    def test_unknown_job(self, client):
        assert client.get("/api/ai/score-all?job_id=missing").status_code == 404
        assert client.delete("/api/ai/score-all?job_id=missing").status_code == 404

    def test_clear_scores(self, keyed_client):
        analysis = AnalysisResult(anthropic=_anthropic_result(), model_used="anthropic")
        with patch("prioritizer.services.analyze_feature", AsyncMock(return_value=analysis)):
            keyed_client.post("/api/ai/score/i1")
        resp = keyed_client.delete("/api/ai/score-all?clear_scores=true")
        assert resp.json() == {"ok": True, "cleared": True}
        assert keyed_client.get("/api/ai/score-all").json()["total_scored"] == 0

    def test_clear_one_feature_score(self, keyed_client):
        analysis = AnalysisResult(anthropic=_anthropic_result(), model_used="anthropic")
        with patch("prioritizer.services.analyze_feature", AsyncMock(return_value=analysis)):
            keyed_client.post("/api/ai/score/i1")
            keyed_client.post("/api/ai/score/i2")
        assert keyed_client.delete("/api/ai/score/i1").json() == {"ok": True, "cleared": True}
        assert keyed_client.delete("/api/ai/score/i1").json() == {"ok": True, "cleared": False}
        assert keyed_client.get("/api/features/i1").json()["ai_scored_at"] is None
        assert keyed_client.get("/api/features/i2").json()["ai_scored_at"]
        assert keyed_client.get("/api/ai/score-all").json()["total_scored"] == 1
        assert keyed_client.delete("/api/ai/score/nope").status_code == 404

    def test_delete_needs_a_target(self, client):
        assert client.delete("/api/ai/score-all").status_code == 400


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettingsEndpoints:
    def test_get_settings(self, client):
        data = client.get("/api/settings").json()
        assert data["settings"]["active_framework"] == "weighted"
        assert {f["id"] for f in data["frameworks"]} == {"weighted", "rice", "ice", "value-effort", "moscow"}
        assert data["api_keys"]["anthropic"] == {"configured": False, "masked": ""}
        assert data["available_models"] == []
        assert data["projects"][0]["name"] == "Product Icebox"

    def test_api_key_masked(self, keyed_client):
        data = keyed_client.get("/api/settings").json()
        assert data["api_keys"]["anthropic"] == {"configured": True, "masked": "sk-a...-key"}

    def test_unknown_provider(self, client):
        resp = client.post("/api/settings/api-keys", json={"provider": "gemini", "key": "x"})
        assert resp.status_code == 400

    def test_set_framework(self, client):
        resp = client.post("/api/settings", json={"action": "setFramework", "framework": "ice"})
        assert resp.status_code == 200
        assert resp.json()["settings"]["active_framework"] == "ice"
        assert resp.json()["settings_hash"]
        assert resp.json()["ai_scores_stale"] is True
        assert client.get("/api/features").json()["framework"] == "ice"

    def test_invalid_command(self, client):
        assert client.post("/api/settings", json={"action": "setFramework", "framework": "kano"}).status_code == 400
        assert client.post("/api/settings", json={"action": "launchRocket"}).status_code == 400


# ---------------------------------------------------------------------------
# Linear and stats
# ---------------------------------------------------------------------------


class TestLinearEndpoints:
    def test_push_without_key(self, client):
        resp = client.post("/api/linear/sync", json={})
        assert resp.status_code == 401
        assert resp.json()["errorCode"] == "API_KEY_MISSING"

    def test_pull_without_key(self, client):
        assert client.post("/api/sync").status_code == 401


class TestStatsEndpoint:
    def test_stats(self, client):
        data = client.get("/api/stats").json()
        assert data["total_features"] == 3
        assert data["duplicates"] == 0
        assert data["by_product"] == {"chat": 1, "calling": 1, "ai-agents": 1, "byoa": 0}
        assert data["by_tier"]["C1"] == 1
        assert data["by_tier"]["C4"] == 1
        assert sum(data["by_priority"].values()) == 3
        assert data["ai_scored"] == 0
        assert len(data["top_features"]) == 3
        assert data["last_synced"] == "2024-01-03T00:00:00Z"
