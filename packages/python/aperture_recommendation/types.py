from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, ValidationError

from aperture_core.errors import InvalidConfigError, InvalidRunTransition
from aperture_core.types import MediaType
from aperture_ranking.types import ScoringConfig


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING)

_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED},
}


def check_transition(current: RunStatus, target: RunStatus) -> None:
    """Terminal runs are immutable; everything else moves forward only."""
    if target not in _TRANSITIONS.get(current, set()):
        raise InvalidRunTransition(f"run cannot go from {current.value} to {target.value}")


class RunType(str, Enum):
    SCHEDULED = "scheduled"
    USER_REGENERATE = "user_regenerate"
    CHANNEL = "channel"
    ADMIN_REBUILD = "admin_rebuild"


ClearPolicy = Literal["clear_all", "keep_history"]


class RecommendationRun(BaseModel):
    id: str
    user_id: str
    media_type: MediaType
    run_type: RunType = RunType.SCHEDULED
    channel_id: str | None = None
    status: RunStatus = RunStatus.PENDING
    candidate_count: int = 0
    selected_count: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
    created_at: datetime
    finished_at: datetime | None = None


class StoredEvidence(BaseModel):
    similar_item_id: str
    similarity: float
    evidence_type: str


class StoredCandidate(BaseModel):
    item_id: str
    title: str | None = None
    rank: int
    is_selected: bool
    selected_rank: int | None = None
    final_score: float
    similarity_score: float
    novelty_score: float
    rating_score: float
    diversity_score: float | None = None
    score_breakdown: dict[str, Any] = Field(default_factory=dict)
    evidence: list[StoredEvidence] = Field(default_factory=list)


class BulkRunSummary(BaseModel):
    job_id: str | None = None
    success: int = 0
    failed: int = 0
    skipped: int = 0
    total_recommendations: int = 0


class PipelineConfig(BaseModel):
    max_candidates: int = Field(default=500, ge=0)
    selected_count: int = Field(default=50, ge=0)
    recent_watch_limit: int = Field(default=50, ge=1)
    include_watched: bool = False
    similarity_weight: float = 0.4
    rating_weight: float = 0.2
    novelty_weight: float = 0.2
    diversity_weight: float = 0.2
    rating_curve: Literal["linear", "tiered"] = "linear"

    def scoring_config(self) -> ScoringConfig:
        return ScoringConfig(
            similarity_weight=self.similarity_weight,
            rating_weight=self.rating_weight,
            novelty_weight=self.novelty_weight,
            diversity_weight=self.diversity_weight,
        )


PIPELINE_DEFAULTS: dict[MediaType, dict[str, Any]] = {
    MediaType.MOVIE: {"selected_count": 50, "recent_watch_limit": 50},
    MediaType.SERIES: {"selected_count": 12, "recent_watch_limit": 100},
}


def resolve_pipeline_config(
    media_type: MediaType, overrides: Mapping[str, Any] | None = None
) -> PipelineConfig:
    merged = {**PIPELINE_DEFAULTS[media_type], **(overrides or {})}
    try:
        return PipelineConfig(**merged)
    except ValidationError as e:
        raise InvalidConfigError(f"bad {media_type.value} pipeline config: {e}") from e
