"""Local JSON snapshots of the three input sources.

Each file holds one wrapper object, e.g. ``{"issues": [...], "syncedAt": ...}``.
Missing files read as empty; unreadable ones are logged and read as empty so
one broken export does not take the feature list down with it.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from prioritizer.config import AppConfig
from prioritizer.schemas import FeaturebasePost, LinearIssue, LinearProject, ZendeskTicket
from prioritizer.utils import utc_now_iso

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _read_wrapper(path: Path) -> dict[str, Any]:
    if not path.exists():
        log.warning("Snapshot not found: %s", path)
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        log.error("Could not read snapshot %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _load_records(path: Path, key: str, model: type[M]) -> list[M]:
    records: list[M] = []
    for raw in _read_wrapper(path).get(key) or []:
        try:
            records.append(model.model_validate(raw))
        except ValidationError as exc:
            log.warning("Skipping malformed %s record in %s: %s", key, path.name, exc.errors()[:1])
    log.info("Loaded %d %s from %s", len(records), key, path)
    return records


def load_linear_issues(config: AppConfig) -> list[LinearIssue]:
    return _load_records(config.linear_issues_file, "issues", LinearIssue)


def load_linear_projects(config: AppConfig) -> list[LinearProject]:
    return _load_records(config.linear_projects_file, "projects", LinearProject)


def load_featurebase_posts(config: AppConfig) -> list[FeaturebasePost]:
    return _load_records(config.featurebase_posts_file, "posts", FeaturebasePost)


def load_zendesk_tickets(config: AppConfig) -> list[ZendeskTicket]:
    return _load_records(config.zendesk_tickets_file, "tickets", ZendeskTicket)


def last_synced(config: AppConfig) -> str | None:
    return _read_wrapper(config.linear_issues_file).get("syncedAt")


@dataclass
class SourceData:
    issues: list[LinearIssue]
    posts: list[FeaturebasePost]
    tickets: list[ZendeskTicket]
    last_synced: str | None = None


def load_all(config: AppConfig) -> SourceData:
    return SourceData(
        issues=load_linear_issues(config),
        posts=load_featurebase_posts(config),
        tickets=load_zendesk_tickets(config),
        last_synced=last_synced(config),
    )


def _write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    tmp.replace(path)


def save_linear_snapshot(
    config: AppConfig,
    issues: list[LinearIssue],
    projects: list[LinearProject],
) -> str:
    """Write freshly pulled issues and projects; returns the sync timestamp."""
    synced_at = utc_now_iso()
    _write_json(config.linear_issues_file, {
        "issues": [i.model_dump(by_alias=True) for i in issues],
        "syncedAt": synced_at,
        "projectCount": len(projects),
    })
    _write_json(config.linear_projects_file, {
        "projects": [p.model_dump(by_alias=True) for p in projects],
        "syncedAt": synced_at,
    })
    log.info("Saved Linear snapshot: %d issues, %d projects", len(issues), len(projects))
    return synced_at
