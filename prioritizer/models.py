from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Document(Base):
    """One JSON blob per key: settings, overrides, audit log, usage, API keys."""
    __tablename__ = "documents"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, default="null")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class AIScoreRecord(Base):
    """Latest LLM scoring result for one feature."""
    __tablename__ = "ai_scores"

    feature_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    openai_json: Mapped[str] = mapped_column(Text, default="null")
    anthropic_json: Mapped[str] = mapped_column(Text, default="null")
    gemini_json: Mapped[str] = mapped_column(Text, default="null")
    scored_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    settings_hash: Mapped[str] = mapped_column(String(64), default="")
    framework: Mapped[str] = mapped_column(String(30), default="weighted")  # weighted | rice | ice | value-effort | moscow
    model_used: Mapped[str] = mapped_column(String(30), default="anthropic")  # openai | anthropic | both
