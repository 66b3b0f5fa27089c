"""Linear GraphQL client: backlog snapshot pull and priority write-back."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

import httpx

from prioritizer.schemas import LinearIssue, LinearProject, ScoredFeature, SyncResultOut
from prioritizer.scoring import map_score_to_priority
from prioritizer.store import DocumentStore

log = logging.getLogger(__name__)

LINEAR_API_URL = "https://api.linear.app/graphql"
PAGE_SIZE = 50
_TIMEOUT = 30.0

PRIORITY_LABELS = {1: "P0 - Urgent", 2: "P1 - High", 3: "P2 - Normal", 4: "P3 - Low"}

_PROJECTS_QUERY = """
query GetProjects($first: Int!, $after: String) {
  projects(first: $first, after: $after, includeArchived: false) {
    pageInfo { hasNextPage endCursor }
    nodes { id name description state }
  }
}
"""

_PROJECT_ISSUES_QUERY = """
query GetProjectIssues($projectId: String!, $first: Int!, $after: String) {
  project(id: $projectId) {
    issues(first: $first, after: $after) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id identifier title description url
        state { id name type }
        priority priorityLabel
        labels { nodes { id name } }
        project { id name }
        attachments { nodes { id url title } }
        comments { nodes { id body createdAt } }
        createdAt updatedAt sortOrder
      }
    }
  }
}
"""

_UPDATE_ISSUE_MUTATION = """
mutation UpdateIssue($issueId: String!, $priority: Int, $sortOrder: Float) {
  issueUpdate(id: $issueId, input: { priority: $priority, sortOrder: $sortOrder }) {
    success
    issue { id priority sortOrder }
  }
}
"""

_COMMENT_MUTATION = """
mutation AddComment($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) { success }
}
"""


class TrackerError(Exception):
    """Linear request failed, or the API key is missing or rejected."""
    def __init__(self, message: str, error_code: str = "API_ERROR"):
        super().__init__(message)
        self.error_code = error_code


class LinearClient:
    def __init__(self, api_key: str | None, transport: httpx.AsyncBaseTransport | None = None):
        if not api_key:
            raise TrackerError(
                "Linear API key not configured. Add your Linear API key in settings.",
                error_code="API_KEY_MISSING",
            )
        self._api_key = api_key
        self._transport = transport

    async def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(_TIMEOUT),
            headers={"Content-Type": "application/json", "Authorization": self._api_key},
            transport=self._transport,
        ) as client:
            try:
                resp = await client.post(LINEAR_API_URL, json={"query": query, "variables": variables or {}})
            except httpx.HTTPError as exc:
                raise TrackerError(f"Linear API request failed: {exc}") from exc
        if resp.status_code in (401, 403):
            raise TrackerError(f"Linear rejected the API key ({resp.status_code})", error_code="API_KEY_ERROR")
        if resp.status_code >= 400:
            raise TrackerError(f"Linear API error: {resp.status_code} {resp.reason_phrase}")
        payload = resp.json()
        if payload.get("errors"):
            raise TrackerError(f"Linear GraphQL error: {payload['errors']}")
        return payload.get("data") or {}

    # -- reads --------------------------------------------------------------

    async def fetch_projects(self) -> list[LinearProject]:
        projects: list[LinearProject] = []
        after = None
        while True:
            data = await self.execute(_PROJECTS_QUERY, {"first": PAGE_SIZE, "after": after})
            page = data["projects"]
            projects.extend(LinearProject.model_validate(p) for p in page["nodes"])
            if not page["pageInfo"]["hasNextPage"]:
                return projects
            after = page["pageInfo"]["endCursor"]

    async def fetch_project_issues(self, project_id: str) -> list[LinearIssue]:
        issues: list[LinearIssue] = []
        after = None
        while True:
            data = await self.execute(
                _PROJECT_ISSUES_QUERY, {"projectId": project_id, "first": PAGE_SIZE, "after": after},
            )
            if not data.get("project"):
                return issues
            page = data["project"]["issues"]
            issues.extend(LinearIssue.model_validate(i) for i in page["nodes"])
            if not page["pageInfo"]["hasNextPage"]:
                return issues
            after = page["pageInfo"]["endCursor"]

    async def fetch_icebox_issues(self) -> tuple[list[LinearIssue], list[LinearProject]]:
        """Issues from every project whose name contains "icebox"."""
        projects = [p for p in await self.fetch_projects() if "icebox" in p.name.lower()]
        log.info("Found %d icebox projects", len(projects))
        issues: list[LinearIssue] = []
        for project in projects:
            project_issues = await self.fetch_project_issues(project.id)
            log.info("Fetched %d issues from %s", len(project_issues), project.name)
            issues.extend(project_issues)
            project.issue_count = len(project_issues)
        return issues, projects

    # -- writes -------------------------------------------------------------

    async def update_priority(
        self,
        issue_id: str,
        priority: int,
        sort_order: float | None = None,
        comment: str | None = None,
    ) -> SyncResultOut:
        """Write priority (and optionally sort order and a comment). Failures are returned, not raised."""
        try:
            await self.execute(
                _UPDATE_ISSUE_MUTATION, {"issueId": issue_id, "priority": priority, "sortOrder": sort_order},
            )
            if comment:
                await self.execute(_COMMENT_MUTATION, {"issueId": issue_id, "body": comment})
        except TrackerError as exc:
            log.warning("Failed to update %s: %s", issue_id, exc)
            return SyncResultOut(success=False, issue_id=issue_id, error=str(exc))
        return SyncResultOut(success=True, issue_id=issue_id)


# ---------------------------------------------------------------------------
# Write-back
# ---------------------------------------------------------------------------

_COMMENT_FACTORS = (
    ("revenueImpact", "Revenue Impact"),
    ("enterpriseReadiness", "Enterprise Readiness"),
    ("requestVolume", "Request Volume"),
    ("competitiveParity", "Competitive Parity"),
    ("strategicAlignment", "Strategic Alignment"),
    ("capabilityGap", "Capability Gap"),
    ("competitiveDifferentiation", "Competitive Differentiation"),
    ("effort", "Effort"),
)


def build_sync_comment(feature: ScoredFeature) -> str:
    lines = [
        "## Priority Score Breakdown",
        "",
        f"**Final Score**: {feature.final_score:.1f}/10",
        f"**Framework**: {feature.framework}",
        f"**Customer Tier**: {feature.customer_tier} ({feature.multiplier}x multiplier)",
        "",
        "### Factor Scores:",
    ]
    for key, label in _COMMENT_FACTORS:
        if key in feature.scores:
            lines.append(f"- {label}: {feature.scores[key]}/10")
    if feature.flags:
        lines += ["", "### Flags:"] + [f"- {flag}" for flag in feature.flags]
    lines += ["", "*Scored by Product OS*"]
    return "\n".join(lines)


async def sync_features(
    client: LinearClient,
    features: list[ScoredFeature],
    add_comments: bool = False,
    delay: float = 0.1,
    store: DocumentStore | None = None,
    updated_by: str = "system",
) -> dict[str, Any]:
    """Push priorities back to Linear, ordering issues within each project by score.

    Each issue is updated independently; one failure does not stop the rest.
    """
    from prioritizer.overrides import append_audit

    by_project: dict[str, list[ScoredFeature]] = defaultdict(list)
    for feature in features:
        by_project[feature.project_name or "unknown"].append(feature)

    results: list[SyncResultOut] = []
    for project_name, group in by_project.items():
        ordered = sorted(group, key=lambda f: f.final_score, reverse=True)
        log.info("Syncing %d features to project %s", len(ordered), project_name)
        for i, feature in enumerate(ordered):
            priority = feature.mapped_priority or map_score_to_priority(feature.final_score)
            sort_order = -1000 + i
            result = await client.update_priority(
                feature.id, priority, sort_order,
                build_sync_comment(feature) if add_comments else None,
            )
            results.append(result)
            if result.success and store is not None:
                append_audit(
                    store, action="sync_to_linear", feature_id=feature.id, updated_by=updated_by,
                    new_value=f"Priority: {priority}, SortOrder: {sort_order} (in {project_name})",
                )
            if delay:
                await asyncio.sleep(delay)

    succeeded = sum(1 for r in results if r.success)
    return {"success": succeeded, "failed": len(results) - succeeded, "results": results}
