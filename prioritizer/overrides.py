"""Manual factor overrides and the audit trail of changes to them."""
from __future__ import annotations

import uuid
from typing import Any

from prioritizer.store import DocumentStore
from prioritizer.utils import utc_now_iso

OVERRIDES_KEY = "score_overrides"
AUDIT_KEY = "audit_log"
MAX_AUDIT_ENTRIES = 1000

AUDIT_ACTIONS = ("ai_score", "manual_override", "sync_to_linear", "framework_change")


def _records(store: DocumentStore, key: str) -> list[dict[str, Any]]:
    value = store.load(key, [])
    return value if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def append_audit(
    store: DocumentStore,
    action: str,
    feature_id: str,
    updated_by: str = "system",
    **fields: Any,
) -> dict[str, Any]:
    """Append one entry; only the newest ``MAX_AUDIT_ENTRIES`` are kept."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")
    entry = {
        "id": uuid.uuid4().hex,
        "feature_id": feature_id,
        "action": action,
        "updated_by": updated_by,
        "updated_at": utc_now_iso(),
        **{k: v for k, v in fields.items() if v is not None},
    }
    entries = _records(store, AUDIT_KEY)
    entries.append(entry)
    store.save(AUDIT_KEY, entries[-MAX_AUDIT_ENTRIES:])
    return entry


def audit_log(store: DocumentStore) -> list[dict[str, Any]]:
    return _records(store, AUDIT_KEY)


def feature_audit_log(store: DocumentStore, feature_id: str) -> list[dict[str, Any]]:
    """Entries for one feature, newest first."""
    return [e for e in reversed(_records(store, AUDIT_KEY)) if e.get("feature_id") == feature_id]


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def load_overrides(store: DocumentStore) -> list[dict[str, Any]]:
    return _records(store, OVERRIDES_KEY)


def overrides_map(store: DocumentStore) -> dict[str, dict[str, Any]]:
    """``feature_id -> {factor: value}`` for every feature with overrides."""
    result: dict[str, dict[str, Any]] = {}
    for o in load_overrides(store):
        result.setdefault(o["feature_id"], {})[o["factor"]] = o["value"]
    return result


def feature_overrides(store: DocumentStore, feature_id: str) -> dict[str, Any]:
    return overrides_map(store).get(feature_id, {})


def set_override(
    store: DocumentStore,
    feature_id: str,
    factor: str,
    value: float | str,
    updated_by: str = "user",
    reason: str | None = None,
) -> dict[str, Any]:
    """Set or replace one factor override, recording the previous value."""
    overrides = load_overrides(store)
    index = next(
        (i for i, o in enumerate(overrides) if o["feature_id"] == feature_id and o["factor"] == factor),
        None,
    )
    previous = overrides[index]["value"] if index is not None else None
    record = {
        "feature_id": feature_id,
        "factor": factor,
        "value": value,
        "updated_by": updated_by,
        "updated_at": utc_now_iso(),
        "reason": reason,
        "previous_value": previous,
    }
    if index is None:
        overrides.append(record)
    else:
        overrides[index] = record
    store.save(OVERRIDES_KEY, overrides)

    append_audit(
        store, action="manual_override", feature_id=feature_id, updated_by=updated_by,
        factor=factor, old_value=previous, new_value=value, reason=reason,
    )
    return record


def remove_override(store: DocumentStore, feature_id: str, factor: str, updated_by: str = "user") -> bool:
    overrides = load_overrides(store)
    remaining = [o for o in overrides if not (o["feature_id"] == feature_id and o["factor"] == factor)]
    if len(remaining) == len(overrides):
        return False
    removed = next(o for o in overrides if o["feature_id"] == feature_id and o["factor"] == factor)
    store.save(OVERRIDES_KEY, remaining)
    append_audit(
        store, action="manual_override", feature_id=feature_id, updated_by=updated_by,
        factor=factor, old_value=removed["value"], reason="Override removed",
    )
    return True


def clear_feature_overrides(store: DocumentStore, feature_id: str, updated_by: str = "user") -> int:
    overrides = load_overrides(store)
    remaining = [o for o in overrides if o["feature_id"] != feature_id]
    removed = len(overrides) - len(remaining)
    if removed:
        store.save(OVERRIDES_KEY, remaining)
        append_audit(
            store, action="manual_override", feature_id=feature_id, updated_by=updated_by,
            reason="All overrides cleared",
        )
    return removed
