"""Fuse tracker issues, community posts and support tickets into feature requests.

Matching is keyword-overlap only (see :mod:`prioritizer.text`). A tracker issue
is matched to a community post by, in order:

1. a direct link: an attachment URL on the community board that names the post;
2. title similarity, only for issues labelled as coming from the board;
3. the best title+body similarity over all posts, above a lower cut-off.

Support tickets are not linked, only counted as a demand signal.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TypeVar

from prioritizer.config import MatchThresholds
from prioritizer.duplicates import mark_duplicates
from prioritizer.products import (
    customer_tier_from_labels,
    product_from_labels,
    product_from_project,
)
from prioritizer.schemas import (
    FeatureComment,
    FeaturebasePost,
    FeatureRequest,
    LinearIssue,
    ZendeskTicket,
)
from prioritizer.text import extract_keywords, joined_keywords, similarity

log = logging.getLogger(__name__)

BOARD_DOMAIN = "featurebase"
MAX_COMMENTS = 10

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Label classification
# ---------------------------------------------------------------------------


def feature_type(labels: Iterable[str]) -> str:
    lower = [label.lower() for label in labels]
    if any("bug" in label or "defect" in label for label in lower):
        return "bug"
    if any("enhancement" in label or "improve" in label for label in lower):
        return "enhancement"
    return "feature"


def feature_source(labels: Iterable[str]) -> str:
    lower = [label.lower() for label in labels]
    if any(BOARD_DOMAIN in label for label in lower):
        return "featurebase"
    if any("support" in label or "zendesk" in label for label in lower):
        return "support"
    return "internal"


def is_backlog(issue: LinearIssue) -> bool:
    return issue.state.type.lower() == "backlog"


def resolve_product(issue: LinearIssue, project_mappings: Mapping[str, str] | None = None) -> str:
    """Explicit mapping, else project-name patterns; a label match always wins."""
    project = issue.project
    if project_mappings and project and project.id and project_mappings.get(project.id):
        product = project_mappings[project.id]
    else:
        product = product_from_project(project.name if project else None)
    return product_from_labels(issue.label_names) or product


# ---------------------------------------------------------------------------
# Community posts and support tickets
# ---------------------------------------------------------------------------


def board_attachment_url(issue: LinearIssue) -> str | None:
    for attachment in issue.attachments:
        if attachment.url and BOARD_DOMAIN in attachment.url:
            return attachment.url
    return None


def has_board_label(issue: LinearIssue) -> bool:
    return any(BOARD_DOMAIN in label.lower() for label in issue.label_names)


def match_featurebase_post(
    issue: LinearIssue,
    posts: list[FeaturebasePost],
    thresholds: MatchThresholds | None = None,
) -> tuple[FeaturebasePost, float] | None:
    """Return ``(post, confidence)`` for the first matching strategy, or None."""
    t = thresholds or MatchThresholds()

    link = board_attachment_url(issue)
    if link:
        for post in posts:
            if post.id in link or post.url == link:
                return post, 1.0

    if has_board_label(issue):
        title_kw = extract_keywords(issue.title)
        for post in posts:
            score = similarity(title_kw, extract_keywords(post.title))
            if score > t.title_match:
                return post, score

    issue_kw = joined_keywords(issue.title, issue.description)
    best: tuple[FeaturebasePost, float] | None = None
    for post in posts:
        score = similarity(issue_kw, joined_keywords(post.title, post.content))
        if score > t.fallback_match and (best is None or score > best[1]):
            best = (post, score)
    return best


def count_related_tickets(
    issue: LinearIssue,
    tickets: list[ZendeskTicket],
    thresholds: MatchThresholds | None = None,
) -> int:
    t = thresholds or MatchThresholds()
    issue_kw = joined_keywords(issue.title, issue.description)
    return sum(
        1 for ticket in tickets
        if similarity(issue_kw, joined_keywords(ticket.subject, ticket.description)) > t.ticket_match
    )


def _top_related(
    feature: FeatureRequest,
    items: list[T],
    text_of,
    thresholds: MatchThresholds | None,
) -> list[T]:
    t = thresholds or MatchThresholds()
    keywords = joined_keywords(feature.title, feature.description)
    scored = []
    for item in items:
        score = similarity(keywords, joined_keywords(*text_of(item)))
        if score > t.related:
            scored.append((score, item))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in scored[:t.related_limit]]


def related_featurebase_posts(
    feature: FeatureRequest,
    posts: list[FeaturebasePost],
    thresholds: MatchThresholds | None = None,
) -> list[FeaturebasePost]:
    """Up to ``related_limit`` posts above the related cut-off, best first."""
    return _top_related(feature, posts, lambda p: (p.title, p.content), thresholds)


def related_zendesk_tickets(
    feature: FeatureRequest,
    tickets: list[ZendeskTicket],
    thresholds: MatchThresholds | None = None,
) -> list[ZendeskTicket]:
    return _top_related(feature, tickets, lambda z: (z.subject, z.description), thresholds)


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def build_feature(
    issue: LinearIssue,
    posts: list[FeaturebasePost],
    tickets: list[ZendeskTicket],
    project_mappings: Mapping[str, str] | None = None,
    thresholds: MatchThresholds | None = None,
) -> FeatureRequest:
    labels = issue.label_names
    match = match_featurebase_post(issue, posts, thresholds)
    comments = [
        FeatureComment(body=c.body, created_at=c.created_at)
        for c in issue.comments[:MAX_COMMENTS]
    ]
    return FeatureRequest(
        id=issue.id,
        identifier=issue.identifier,
        title=issue.title,
        description=issue.description or "",
        url=issue.url,
        product=resolve_product(issue, project_mappings),
        customer_tier=customer_tier_from_labels(labels),
        type=feature_type(labels),
        source=feature_source(labels),
        featurebase_url=match[0].url if match else board_attachment_url(issue),
        featurebase_upvotes=match[0].upvotes if match else None,
        support_ticket_count=count_related_tickets(issue, tickets, thresholds),
        created_at=issue.created_at,
        updated_at=issue.updated_at,
        labels=labels,
        project_id=issue.project.id if issue.project else None,
        project_name=issue.project.name if issue.project else None,
        linear_state=issue.state.name or None,
        linear_priority=issue.priority,
        sort_order=issue.sort_order,
        comments=comments or None,
    )


def correlate_data(
    issues: list[LinearIssue],
    posts: list[FeaturebasePost],
    tickets: list[ZendeskTicket],
    project_mappings: Mapping[str, str] | None = None,
    excluded_projects: Iterable[str] | None = None,
    thresholds: MatchThresholds | None = None,
) -> list[FeatureRequest]:
    """Build feature requests from backlog issues, in issue order, with duplicates marked."""
    excluded = set(excluded_projects or ())
    backlog = [
        issue for issue in issues
        if not (issue.project and issue.project.id and issue.project.id in excluded)
        and is_backlog(issue)
    ]
    log.info(
        "Filtered to %d backlog issues from %d total (%d projects excluded)",
        len(backlog), len(issues), len(excluded),
    )

    features = [
        build_feature(issue, posts, tickets, project_mappings, thresholds)
        for issue in backlog
    ]
    mark_duplicates(features, (thresholds or MatchThresholds()).duplicate)
    log.info("Correlated %d features", len(features))
    return features
