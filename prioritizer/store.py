"""Key/value document store over the ``documents`` table.

Each key holds one JSON value. Writes replace the whole value; there are no
cross-key transactions and the last writer wins.
"""
from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from prioritizer.models import Document
from prioritizer.utils import json_parse, utc_now


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``patch`` into a copy of ``base``; non-dict values replace."""
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class DocumentStore:
    def __init__(self, session: Session):
        self.session = session

    def load(self, key: str, default: Any = None) -> Any:
        doc = self.session.get(Document, key)
        if doc is None:
            return default
        return json_parse(doc.value_json, default)

    def save(self, key: str, value: Any) -> None:
        doc = self.session.get(Document, key)
        if doc is None:
            doc = Document(key=key)
            self.session.add(doc)
        doc.value_json = json.dumps(value, default=str)
        doc.updated_at = utc_now().replace(tzinfo=None)
        self.session.commit()


    def merge(self, key: str, patch: dict[str, Any]) -> dict[str, Any]:
        current = self.load(key, {})
        if not isinstance(current, dict):
            current = {}
        merged = deep_merge(current, patch)
        self.save(key, merged)
        return merged
