from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, List, Literal, Sequence

from aperture_core.types import MediaType
from aperture_ranking.types import Candidate, FeatureContribution, ScoreBreakdown, ScoringConfig

RatingCurve = Literal["linear", "tiered"]


@dataclass(frozen=True)
class NormAnchors:
    pop_anchor: float  # used with log1p
    pop_alpha: float = 0.6
    rating_scale: float = 10.0
    prior_votes: float = 50.0  # votes needed to move halfway off the prior
    neutral_rating: float = 0.4  # score for unrated items


# Module-level defaults
DEFAULT_ANCHORS: Dict[MediaType, NormAnchors] = {
    MediaType.MOVIE: NormAnchors(pop_anchor=31.0),  # pop_anchor = ~P99(27)*1.15
    MediaType.SERIES: NormAnchors(pop_anchor=58.0),  # pop_anchor = ~P99(50)*1.15
}

DEFAULT_PRIOR_MEAN = 7.0


@dataclass(frozen=True)
class ScoringContext:
    media_type: MediaType = MediaType.MOVIE
    user_rating_mean: float | None = None  # on the 10-point scale
    rating_curve: RatingCurve = "linear"
    anchors: NormAnchors | None = None


def _clamp01(x: float) -> float:
    return 0.0 if x <= 0.0 else 1.0 if x >= 1.0 else x


def bayes_quality(avg, cnt, mu=DEFAULT_PRIOR_MEAN, m=50.0):
    if cnt is None:
        return float(avg)
    avg = float(avg or 0.0)
    cnt = max(0.0, float(cnt))
    return (mu * m + avg * cnt) / (m + cnt)


def tiered_rating(r: float) -> float:
    """Piecewise curve on a 10-point rating: great titles pull away fast."""
    r = max(0.0, min(10.0, r))
    if r >= 8.0:
        return 0.8 + (r - 8.0) / 2.0 * 0.2
    if r >= 7.0:
        return 0.6 + (r - 7.0) * 0.2
    if r >= 6.0:
        return 0.4 + (r - 6.0) * 0.2
    if r >= 5.0:
        return 0.2 + (r - 5.0) * 0.2
    return r / 25.0


def norm_rating(x: float, scale: float = 10.0, curve: RatingCurve = "linear") -> float:
    on_ten = float(x) * 10.0 / max(1e-6, scale)
    if curve == "tiered":
        return _clamp01(tiered_rating(on_ten))
    return _clamp01(on_ten / 10.0)


def norm_popularity(pop, anchor: float, alpha: float = 0.6) -> float:
    if pop is None:
        return 0.0
    return _clamp01((math.log1p(max(0.0, float(pop))) / math.log1p(anchor)) ** alpha)


def novelty_score(pop, anchors: NormAnchors) -> float:
    # unknown popularity sits in the middle
    if pop is None:
        return 0.5
    return 1.0 - norm_popularity(pop, anchors.pop_anchor, anchors.pop_alpha)


def rating_score(c: Candidate, anchors: NormAnchors, ctx: ScoringContext) -> float:
    if c.community_rating is None:
        return anchors.neutral_rating
    prior = ctx.user_rating_mean if ctx.user_rating_mean is not None else DEFAULT_PRIOR_MEAN
    # the prior lives on the 10-point scale; move it onto the rating's own scale
    prior = prior * anchors.rating_scale / 10.0
    smoothed = bayes_quality(c.community_rating, c.vote_count, mu=prior, m=anchors.prior_votes)
    return norm_rating(smoothed, anchors.rating_scale, ctx.rating_curve)


def _feature(value: float, weight: float) -> FeatureContribution:
    return FeatureContribution(value=value, weight=weight, contribution=weight * value)


def score_candidates(
    candidates: Sequence[Candidate],
    config: ScoringConfig,
    context: ScoringContext | None = None,
) -> List[Candidate]:
    """
    Independent per-candidate scoring: no candidate affects another's score.

    Returns new Candidate objects sorted by base score (ties: similarity,
    then input order) with `rank` filled in from 1.
    """
    config.validate()
    ctx = context or ScoringContext()
    a = ctx.anchors or DEFAULT_ANCHORS.get(ctx.media_type, DEFAULT_ANCHORS[MediaType.MOVIE])

    scored: list[tuple[int, Candidate]] = []
    for idx, c in enumerate(candidates):
        sim = _clamp01(float(c.similarity))
        q = rating_score(c, a, ctx)
        n = novelty_score(c.popularity, a)
        breakdown = ScoreBreakdown(
            similarity=_feature(sim, config.similarity_weight),
            rating=_feature(q, config.rating_weight),
            novelty=_feature(n, config.novelty_weight),
        )
        base = breakdown.base
        scored.append(
            (
                idx,
                replace(
                    c,
                    similarity=sim,
                    rating_score=q,
                    novelty=n,
                    base_score=base,
                    final_score=base,
                    breakdown=replace(breakdown, final=base),
                ),
            )
        )

    scored.sort(key=lambda t: (-t[1].base_score, -t[1].similarity, t[0]))
    out: List[Candidate] = []
    for rank, (_, c) in enumerate(scored, start=1):
        c.rank = rank
        out.append(c)
    return out
