from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Sequence

import numpy as np
from numpy.typing import NDArray

from aperture_core.errors import EmbeddingModelMismatch

ItemId = str


class MediaType(str, Enum):
    MOVIE = "movie"
    SERIES = "series"


DecayMode = Literal["exponential", "linear"]


@dataclass(frozen=True)
class EmbeddingModelSpec:
    """The embedding model currently producing item and taste vectors."""

    model_id: str
    dimension: int

    def vector(self, values: Sequence[float] | NDArray[np.float32]) -> "EmbeddingVector":
        arr = np.asarray(values, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != self.dimension:
            raise EmbeddingModelMismatch(
                f"expected {self.dimension}-d vector for {self.model_id}, got shape {arr.shape}"
            )
        return EmbeddingVector(model_id=self.model_id, dimension=self.dimension, values=arr)


@dataclass(frozen=True, eq=False)
class EmbeddingVector:
    """
    A vector tagged with the model that produced it.

    Vectors from different models (or dimensions) are never compared; use
    `require_compatible` before any similarity math.
    """

    model_id: str
    dimension: int
    values: NDArray[np.float32]

    def matches(self, model: EmbeddingModelSpec) -> bool:
        return self.model_id == model.model_id and self.dimension == model.dimension

    def require(self, model: EmbeddingModelSpec) -> None:
        if not self.matches(model):
            raise EmbeddingModelMismatch(
                f"vector from {self.model_id}/{self.dimension} used with "
                f"{model.model_id}/{model.dimension}"
            )

    def require_compatible(self, other: "EmbeddingVector") -> None:
        if self.model_id != other.model_id or self.dimension != other.dimension:
            raise EmbeddingModelMismatch(
                f"cannot compare {self.model_id}/{self.dimension} "
                f"with {other.model_id}/{other.dimension}"
            )

    def cosine(self, other: "EmbeddingVector") -> float:
        self.require_compatible(other)
        na = float(np.linalg.norm(self.values))
        nb = float(np.linalg.norm(other.values))
        if na == 0.0 or nb == 0.0:
            return 0.0
        return float(np.dot(self.values, other.values) / (na * nb))

    def as_list(self) -> list[float]:
        return [float(x) for x in self.values]


@dataclass
class WatchedItem:
    item_id: ItemId
    title: str
    genres: list[str] = field(default_factory=list)
    collection_name: str | None = None
    play_count: int = 1
    is_favorite: bool = False
    last_played_at: datetime | None = None  # tz-aware
    user_rating: float | None = None  # 1-10 or 1-5 scale
    completion_rate: float | None = None  # series only
    episode_count: int | None = None  # series only


@dataclass
class BuildParams:
    decay_mode: DecayMode = "exponential"
    half_life_days: float = 180.0
    linear_window_days: float = 730.0
    recency_floor: float = 0.25  # old items still matter somewhat
    favorite_boost: float = 1.5
    interest_weight: float = 1.0  # scale applied to each custom interest weight
    max_weight_ratio: float = 3.0  # cap any weight at N x the mean
    recent_watch_limit: int = 50
