from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from aperture_core.errors import InvalidConfigError
from aperture_core.types import ItemId


@dataclass(frozen=True)
class FeatureContribution:
    value: float  # feature value (pre-weight, post-normalization)
    weight: float  # weight used in this run
    contribution: float  # weight * value


@dataclass(frozen=True)
class ScoreBreakdown:
    similarity: FeatureContribution
    rating: FeatureContribution
    novelty: FeatureContribution
    diversity_penalty: float = 0.0  # raw overlap penalty in [0, 1]
    diversity_weight: float = 0.0  # lambda; final = base - diversity_weight * diversity_penalty
    final: float = 0.0

    @property
    def base(self) -> float:
        return self.similarity.contribution + self.rating.contribution + self.novelty.contribution

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScoringConfig:
    similarity_weight: float = 0.4
    rating_weight: float = 0.2
    novelty_weight: float = 0.2
    diversity_weight: float = 0.2  # lambda for the selector

    def validate(self) -> None:
        for name in ("similarity_weight", "rating_weight", "novelty_weight", "diversity_weight"):
            if getattr(self, name) < 0:
                raise InvalidConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.diversity_weight > 1:
            raise InvalidConfigError(f"diversity_weight must be in [0, 1], got {self.diversity_weight}")


@dataclass
class Candidate:
    item_id: ItemId
    title: str = ""
    year: Optional[int] = None
    genres: list[str] = field(default_factory=list)
    collection: Optional[str] = None
    network: Optional[str] = None
    community_rating: Optional[float] = None
    vote_count: Optional[int] = None
    popularity: Optional[float] = None
    similarity: float = 0.0
    # filled by the scorer
    novelty: float = 0.0
    rating_score: float = 0.0
    base_score: float = 0.0
    rank: int = 0
    breakdown: Optional[ScoreBreakdown] = None
    # filled by the selector
    diversity_score: Optional[float] = None
    final_score: float = 0.0
    selected_rank: Optional[int] = None
    is_selected: bool = False

    @classmethod
    def from_payload(cls, item_id: ItemId, similarity: float, payload: dict[str, Any]) -> "Candidate":
        return cls(
            item_id=item_id,
            title=str(payload.get("title") or ""),
            year=payload.get("release_year"),
            genres=list(payload.get("genres") or []),
            collection=payload.get("collection"),
            network=payload.get("network"),
            community_rating=payload.get("vote_average"),
            vote_count=payload.get("vote_count"),
            popularity=payload.get("popularity"),
            similarity=similarity,
        )
