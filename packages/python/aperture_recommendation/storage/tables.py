from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class RecommendationRunRow(Base):
    __tablename__ = "recommendation_runs"
    __table_args__ = (Index("ix_runs_user_media_status", "user_id", "media_type", "status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    media_type: Mapped[str] = mapped_column(String(16))
    run_type: Mapped[str] = mapped_column(String(32), default="scheduled")
    channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    candidate_count: Mapped[int] = mapped_column(Integer, default=0)
    selected_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    candidates: Mapped[list["CandidateRow"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )


class CandidateRow(Base):
    __tablename__ = "recommendation_candidates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    run_id: Mapped[str] = mapped_column(
        ForeignKey("recommendation_runs.id", ondelete="CASCADE"), index=True
    )
    item_id: Mapped[str] = mapped_column(String(64))
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    rank: Mapped[int] = mapped_column(Integer)
    is_selected: Mapped[bool] = mapped_column(Boolean, default=False)
    selected_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_score: Mapped[float] = mapped_column(Float)
    similarity_score: Mapped[float] = mapped_column(Float)
    novelty_score: Mapped[float] = mapped_column(Float)
    rating_score: Mapped[float] = mapped_column(Float)
    diversity_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_breakdown: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    run: Mapped[RecommendationRunRow] = relationship(back_populates="candidates")
    evidence: Mapped[list["EvidenceRow"]] = relationship(
        back_populates="candidate", cascade="all, delete-orphan", passive_deletes=True
    )


class EvidenceRow(Base):
    __tablename__ = "recommendation_evidence"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    candidate_id: Mapped[str] = mapped_column(
        ForeignKey("recommendation_candidates.id", ondelete="CASCADE"), index=True
    )
    similar_item_id: Mapped[str] = mapped_column(String(64))
    similarity: Mapped[float] = mapped_column(Float)
    evidence_type: Mapped[str] = mapped_column(String(16))

    candidate: Mapped[CandidateRow] = relationship(back_populates="evidence")


class TasteProfileRow(Base):
    __tablename__ = "user_taste_profiles"
    __table_args__ = (UniqueConstraint("user_id", "media_type"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    media_type: Mapped[str] = mapped_column(String(16))
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    embedding_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    embedding_dim: Mapped[int | None] = mapped_column(Integer, nullable=True)
    build_debug: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    refresh_interval_days: Mapped[int] = mapped_column(Integer, default=7)
    min_franchise_items: Mapped[int] = mapped_column(Integer, default=2)
    min_franchise_size: Mapped[int] = mapped_column(Integer, default=2)
    auto_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    user_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class FranchisePreferenceRow(Base):
    __tablename__ = "user_franchise_preferences"
    __table_args__ = (UniqueConstraint("user_id", "franchise_name", "media_type"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    franchise_name: Mapped[str] = mapped_column(String(255))
    media_type: Mapped[str] = mapped_column(String(16), default="both")
    preference_score: Mapped[float] = mapped_column(Float, default=0.0)
    items_watched: Mapped[int] = mapped_column(Integer, default=0)
    total_engagement: Mapped[float] = mapped_column(Float, default=0.0)
    is_user_set: Mapped[bool] = mapped_column(Boolean, default=False)
    last_engaged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class GenreWeightRow(Base):
    __tablename__ = "user_genre_weights"
    __table_args__ = (UniqueConstraint("user_id", "genre"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    genre: Mapped[str] = mapped_column(String(128))
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    is_user_set: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CustomInterestRow(Base):
    __tablename__ = "user_custom_interests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    media_type: Mapped[str] = mapped_column(String(16))
    interest_text: Mapped[str] = mapped_column(Text)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    embedding_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
