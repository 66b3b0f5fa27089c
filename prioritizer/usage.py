"""Token and cost accounting for LLM calls, kept for a rolling 30 days."""
from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Any

from prioritizer.store import DocumentStore
from prioritizer.utils import parse_timestamp, utc_now, utc_now_iso

USAGE_KEY = "usage"
RETENTION_DAYS = 30


def load_usage_records(store: DocumentStore) -> list[dict[str, Any]]:
    records = store.load(USAGE_KEY, [])
    return records if isinstance(records, list) else []


def add_usage_record(
    store: DocumentStore,
    model: str,
    tokens_used: int,
    cost: float,
    feature_id: str | None = None,
) -> None:
    records = load_usage_records(store)
    records.append({
        "date": utc_now_iso(),
        "model": model,
        "tokens_used": tokens_used,
        "cost": cost,
        "feature_id": feature_id,
    })
    cutoff = utc_now() - timedelta(days=RETENTION_DAYS)
    store.save(USAGE_KEY, [r for r in records if parse_timestamp(r.get("date")) >= cutoff])


def usage_stats(store: DocumentStore) -> dict[str, Any]:
    """Totals overall, per model, and per day (ascending)."""
    records = load_usage_records(store)
    by_model: dict[str, dict[str, float]] = {
        m: {"tokens": 0, "cost": 0.0} for m in ("openai", "anthropic", "gemini")
    }
    by_day: dict[str, dict[str, float]] = defaultdict(lambda: {"tokens": 0, "cost": 0.0})
    for r in records:
        tokens, cost = int(r.get("tokens_used") or 0), float(r.get("cost") or 0.0)
        bucket = by_model.setdefault(r.get("model") or "unknown", {"tokens": 0, "cost": 0.0})
        bucket["tokens"] += tokens
        bucket["cost"] += cost
        day = by_day[parse_timestamp(r.get("date")).date().isoformat()]
        day["tokens"] += tokens
        day["cost"] += cost
    return {
        "total_tokens": sum(int(r.get("tokens_used") or 0) for r in records),
        "total_cost": sum(float(r.get("cost") or 0.0) for r in records),
        "by_model": by_model,
        "daily": [{"date": d, **v} for d, v in sorted(by_day.items())],
    }


def today_usage(store: DocumentStore) -> dict[str, Any]:
    today = utc_now().date()
    todays = [r for r in load_usage_records(store) if parse_timestamp(r.get("date")).date() == today]
    return {
        "tokens": sum(int(r.get("tokens_used") or 0) for r in todays),
        "cost": sum(float(r.get("cost") or 0.0) for r in todays),
        "requests": len(todays),
    }
