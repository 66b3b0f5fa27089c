"""Cache of LLM scoring results with configuration-hash staleness.

Each entry is stamped with the settings hash active when it was written. A
single global hash records the configuration the cache was last written
under; :meth:`AIScoreCache.is_stale` compares against that, while
:meth:`AIScoreCache.staleness` checks every entry's own stamp.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from prioritizer.models import AIScoreRecord
from prioritizer.schemas import AIModelResult, StoredAIScore
from prioritizer.store import DocumentStore
from prioritizer.utils import json_parse, parse_timestamp, to_canonical_json, utc_now, utc_now_iso

log = logging.getLogger(__name__)

META_KEY = "ai_scores_meta"

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF


def fnv1a_64(text: str) -> str:
    h = _FNV_OFFSET
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK64
    return f"{h:016x}"


def settings_hash(prompt_config: Any, framework: str, temperature: float) -> str:
    """Deterministic fingerprint of the configuration that produced AI scores."""
    if hasattr(prompt_config, "model_dump"):
        prompt_config = prompt_config.model_dump()
    payload = {"prompt_config": prompt_config, "framework": framework, "temperature": float(temperature)}
    return fnv1a_64(to_canonical_json(payload))


def _dump_result(result: AIModelResult | None) -> str:
    return result.model_dump_json() if result else "null"


def _load_result(raw: str | None) -> AIModelResult | None:
    data = json_parse(raw, None)
    return AIModelResult.model_validate(data) if data else None


def _to_entry(row: AIScoreRecord) -> StoredAIScore:
    scored_at = row.scored_at
    return StoredAIScore(
        feature_id=row.feature_id,
        openai=_load_result(row.openai_json),
        anthropic=_load_result(row.anthropic_json),
        gemini=_load_result(row.gemini_json),
        scored_at=parse_timestamp(scored_at).isoformat() if scored_at else "",
        settings_hash=row.settings_hash or "",
        framework=row.framework or "weighted",
        model_used=row.model_used or "anthropic",
    )


class AIScoreCache:
    def __init__(self, session: Session):
        self.session = session
        self._docs = DocumentStore(session)

    # -- meta ---------------------------------------------------------------

    def _meta(self) -> dict[str, Any]:
        meta = self._docs.load(META_KEY, {})
        return meta if isinstance(meta, dict) else {}

    def _write_meta(self, current_hash: str) -> None:
        self._docs.save(META_KEY, {"settings_hash": current_hash, "last_updated": utc_now_iso()})

    @property
    def global_hash(self) -> str:
        return self._meta().get("settings_hash") or ""

    # -- reads --------------------------------------------------------------

    def get(self, feature_id: str) -> StoredAIScore | None:
        row = self.session.get(AIScoreRecord, feature_id)
        return _to_entry(row) if row else None

    def get_map(self) -> dict[str, StoredAIScore]:
        rows = self.session.execute(select(AIScoreRecord)).scalars().all()
        return {row.feature_id: _to_entry(row) for row in rows}

    def is_stale(self, current_hash: str) -> bool:
        stored = self.global_hash
        return not stored or stored != current_hash

    def status(self) -> dict[str, Any]:
        meta = self._meta()
        total = self.session.execute(select(func.count()).select_from(AIScoreRecord)).scalar_one()
        return {
            "total_scored": total,
            "last_updated": meta.get("last_updated") or None,
            "settings_hash": meta.get("settings_hash") or "",
        }

    def staleness(self, feature_ids: Iterable[str], current_hash: str) -> dict[str, int]:
        """Count features scored under the current hash, under an older one, and never."""
        hashes = dict(self.session.execute(
            select(AIScoreRecord.feature_id, AIScoreRecord.settings_hash)
        ).all())
        counts = {"scored_with_current": 0, "stale": 0, "unscored": 0}
        for fid in feature_ids:
            if fid not in hashes:
                counts["unscored"] += 1
            elif hashes[fid] == current_hash:
                counts["scored_with_current"] += 1
            else:
                counts["stale"] += 1
        return counts

    # -- writes -------------------------------------------------------------

    def _upsert(
        self,
        feature_id: str,
        openai: AIModelResult | None,
        anthropic: AIModelResult | None,
        current_hash: str,
        framework: str,
        model_used: str,
        gemini: AIModelResult | None = None,
    ) -> None:
        row = self.session.get(AIScoreRecord, feature_id)
        if row is None:
            row = AIScoreRecord(feature_id=feature_id)
            self.session.add(row)
        row.openai_json = _dump_result(openai)
        row.anthropic_json = _dump_result(anthropic)
        row.gemini_json = _dump_result(gemini)
        row.scored_at = utc_now().replace(tzinfo=None)
        row.settings_hash = current_hash
        row.framework = framework
        row.model_used = model_used

    def save(
        self,
        feature_id: str,
        openai: AIModelResult | None,
        anthropic: AIModelResult | None,
        current_hash: str,
        framework: str = "weighted",
        model_used: str = "anthropic",
        gemini: AIModelResult | None = None,
    ) -> None:
        self._upsert(feature_id, openai, anthropic, current_hash, framework, model_used, gemini)
        self.session.commit()
        self._write_meta(current_hash)

    def clear_all(self) -> None:
        self.session.execute(delete(AIScoreRecord))
        self.session.commit()
        self._write_meta("")
        log.info("Cleared all AI scores")

    def clear(self, feature_ids: Iterable[str]) -> None:
        ids = list(feature_ids)
        if not ids:
            return
        self.session.execute(delete(AIScoreRecord).where(AIScoreRecord.feature_id.in_(ids)))
        self.session.commit()
        self._docs.merge(META_KEY, {"last_updated": utc_now_iso()})
