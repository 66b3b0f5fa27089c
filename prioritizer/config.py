"""Process-level configuration: paths, credentials, pacing, match thresholds.

User-editable scoring settings (weights, framework, prompts) are not here;
they live in the document store, see :mod:`prioritizer.settings`.
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("PRIORITIZER_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


class MatchThresholds(BaseModel):
    """Similarity cut-offs used by the correlator and duplicate detector.

    Higher values trade recall for fewer false positives; none of them is
    derived from anything more principled than that.
    """
    title_match: float = 0.5
    fallback_match: float = 0.4
    ticket_match: float = 0.3
    related: float = 0.2
    duplicate: float = 0.6
    related_limit: int = 5


class AppConfig(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    config_file: Path = Field(default_factory=lambda: _resolve_project_root() / "config" / "prioritizer.yaml")

    linear_api_key: str = Field(default_factory=lambda: os.getenv("LINEAR_API_KEY", ""))
    anthropic_api_key: str = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", ""))
    openai_api_key: str = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))

    batch_delay_seconds: float = 1.0
    sync_delay_seconds: float = 0.1
    job_ttl_seconds: float = 3600.0

    thresholds: MatchThresholds = Field(default_factory=MatchThresholds)

    @property
    def database_path(self) -> Path:
        return self.data_dir / "prioritizer.db"

    @property
    def linear_issues_file(self) -> Path:
        return self.data_dir / "linear" / "issues.json"

    @property
    def linear_projects_file(self) -> Path:
        return self.data_dir / "linear" / "projects.json"

    @property
    def featurebase_posts_file(self) -> Path:
        return self.data_dir / "featurebase" / "posts.json"

    @property
    def zendesk_tickets_file(self) -> Path:
        return self.data_dir / "zendesk" / "tickets.json"

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def load_yaml(self, path: Path | None = None) -> dict[str, Any]:
        path = path or self.config_file
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def apply_overrides(self, raw: dict[str, Any]) -> None:
        """Apply ``thresholds`` and pacing values from a YAML mapping."""
        thresholds = raw.get("thresholds")
        if isinstance(thresholds, dict):
            self.thresholds = self.thresholds.model_copy(update={
                k: v for k, v in thresholds.items() if k in MatchThresholds.model_fields
            })
        for key in ("batch_delay_seconds", "sync_delay_seconds", "job_ttl_seconds"):
            if key in raw:
                setattr(self, key, float(raw[key]))


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    config = AppConfig()
    config.apply_overrides(config.load_yaml())
    config.ensure_directories()
    return config
