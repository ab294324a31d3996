from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from aperture_core.types import EmbeddingModelSpec, EmbeddingVector, MediaType

FranchiseScope = Union[MediaType, Literal["both"]]


class ProfileState(str, Enum):
    MISSING = "missing"
    STALE = "stale"  # built under another embedding model
    EXPIRED = "expired"  # older than the refresh interval
    FRESH = "fresh"


class TasteProfile(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: str
    media_type: MediaType = MediaType.MOVIE
    embedding: EmbeddingVector | None = None
    is_locked: bool = False
    refresh_interval_days: int = 7
    min_franchise_items: int = 2
    min_franchise_size: int = 2
    auto_updated_at: datetime | None = None
    user_modified_at: datetime | None = None
    created_at: datetime | None = None


def profile_state(profile: TasteProfile | None, active_model: EmbeddingModelSpec, now: datetime) -> ProfileState:
    if profile is None or profile.embedding is None:
        return ProfileState.MISSING
    if not profile.embedding.matches(active_model):
        return ProfileState.STALE
    if profile.auto_updated_at is None:
        return ProfileState.EXPIRED
    if now - profile.auto_updated_at > timedelta(days=profile.refresh_interval_days):
        return ProfileState.EXPIRED
    return ProfileState.FRESH


class ProfileSettingsUpdate(BaseModel):
    is_locked: bool | None = None
    refresh_interval_days: int | None = Field(default=None, ge=1)
    min_franchise_items: int | None = Field(default=None, ge=1)
    min_franchise_size: int | None = Field(default=None, ge=1)


class FranchisePreference(BaseModel):
    user_id: str
    franchise_name: str
    media_type: FranchiseScope = "both"
    preference_score: float = Field(default=0.0, ge=-1.0, le=1.0)
    items_watched: int = 0
    total_engagement: float = 0.0
    is_user_set: bool = False
    last_engaged_at: datetime | None = None

    def applies_to(self, media_type: MediaType) -> bool:
        return self.media_type == "both" or self.media_type == media_type


class GenreWeight(BaseModel):
    user_id: str
    genre: str
    weight: float = Field(default=1.0, ge=0.0, le=2.0)  # 0 avoid, 1 neutral, 2 boost
    is_user_set: bool = False


class CustomInterest(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    user_id: str
    media_type: MediaType
    interest_text: str
    embedding: EmbeddingVector | None = None
    weight: float = 1.0
    created_at: datetime | None = None
