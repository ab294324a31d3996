from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from aperture_core.errors import InvalidConfigError
from aperture_ranking.types import Candidate

_EPS = 1e-6


def attribute_overlap(
    a: Candidate,
    b: Candidate,
    *,
    genre_weight: float = 0.7,
    collection_weight: float = 0.3,
    network_weight: float = 0.4,
) -> float:
    """
    Genre Jaccard blended with "same collection"; in [0, 1]. When either
    side has a network (series), "same network" takes `network_weight` of
    the result.
    """
    ga = {g.lower() for g in a.genres}
    gb = {g.lower() for g in b.genres}
    union = ga | gb
    jaccard = len(ga & gb) / len(union) if union else 0.0
    same_col = 1.0 if a.collection and a.collection == b.collection else 0.0
    overlap = genre_weight * jaccard + collection_weight * same_col
    if a.network or b.network:
        same_net = 1.0 if a.network and a.network == b.network else 0.0
        overlap = (1.0 - network_weight) * overlap + network_weight * same_net
    return overlap


def _mark(c: Candidate, *, final: float, penalty: float, weight: float, selected_rank: int) -> Candidate:
    out = replace(
        c,
        final_score=final,
        diversity_score=1.0 - penalty,
        selected_rank=selected_rank,
        is_selected=True,
    )
    if c.breakdown is not None:
        out.breakdown = replace(c.breakdown, diversity_penalty=penalty, diversity_weight=weight, final=final)
    return out


def _unselected(c: Candidate) -> Candidate:
    return replace(c, final_score=c.base_score, is_selected=False, selected_rank=None, diversity_score=None)


def select_simple(candidates: Sequence[Candidate], k: int) -> tuple[list[Candidate], list[Candidate]]:
    """Top-k by base score (ties: similarity, then input order)."""
    order = sorted(range(len(candidates)), key=lambda i: (-candidates[i].base_score, -candidates[i].similarity, i))
    if k <= 0:
        return [], [_unselected(candidates[i]) for i in order]
    picked = [
        _mark(candidates[i], final=candidates[i].base_score, penalty=0.0, weight=0.0, selected_rank=r)
        for r, i in enumerate(order[:k], start=1)
    ]
    rest = [_unselected(candidates[i]) for i in order[k:]]
    return picked, rest


def select_diverse(
    candidates: Sequence[Candidate],
    k: int,
    diversity: float,
) -> tuple[list[Candidate], list[Candidate]]:
    """
    Greedy MMR-style selection.

    Each round picks the candidate maximising
    `base_score - diversity * penalty`, where penalty is the
    similarity-weighted mean overlap with what is already picked.
    Returns (selected in pick order, remaining candidates).
    """
    if diversity < 0 or diversity > 1:
        raise InvalidConfigError(f"diversity must be in [0, 1], got {diversity}")
    if diversity == 0:
        return select_simple(candidates, k)

    n = len(candidates)
    if k <= 0 or n == 0:
        return select_simple(candidates, 0)

    # running similarity-weighted overlap sums per candidate
    num = [0.0] * n
    den = [0.0] * n
    remaining = list(range(n))
    picked: list[Candidate] = []

    while remaining and len(picked) < k:
        best_i = -1
        best_final = best_sim = 0.0
        best_pen = 0.0
        for i in remaining:
            c = candidates[i]
            pen = num[i] / den[i] if den[i] > 0 else 0.0
            final = c.base_score - diversity * pen
            # strict comparisons keep the earlier index on full ties
            if (
                best_i < 0
                or final > best_final
                or (final == best_final and c.similarity > best_sim)
            ):
                best_i, best_final, best_sim, best_pen = i, final, c.similarity, pen

        chosen = candidates[best_i]
        picked.append(
            _mark(chosen, final=best_final, penalty=best_pen, weight=diversity, selected_rank=len(picked) + 1)
        )
        remaining.remove(best_i)

        w = max(chosen.similarity, _EPS)
        for i in remaining:
            num[i] += w * attribute_overlap(candidates[i], chosen)
            den[i] += w

    rest_order = sorted(remaining, key=lambda i: (-candidates[i].base_score, -candidates[i].similarity, i))
    return picked, [_unselected(candidates[i]) for i in rest_order]
