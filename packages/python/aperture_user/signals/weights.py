import math
from datetime import datetime
from typing import Sequence

from aperture_core.types import BuildParams, ItemId, MediaType, WatchedItem
from aperture_user.taste.schemas import FranchisePreference, GenreWeight

from .decay import recency_factor
from .franchise import franchise_of, normalize_rating


def engagement_weight(item: WatchedItem, media_type: MediaType, params: BuildParams) -> float:
    """
    Movies: rewatches count, with diminishing returns.
    Series: episodes watched, boosted when the user got through most of it.
    """
    if media_type == MediaType.SERIES:
        w = 1.0 + math.log10(max(item.episode_count or 1, 1))
        completion = item.completion_rate or 0.0
        if completion > 0.9:
            w *= 1.5
        elif completion > 0.5:
            w *= 1.2
    else:
        w = 1.0 + math.log10(max(item.play_count or 1, 1)) * 0.5
    if item.is_favorite:
        w *= params.favorite_boost
    return w


def rating_factor(item: WatchedItem) -> float:
    # unrated is neutral; a 10/10 gives 1.25, a 1/10 gives ~0.58
    if item.user_rating is None:
        return 1.0
    return 0.5 + normalize_rating(float(item.user_rating)) * 0.75


def franchise_boost(
    item: WatchedItem,
    media_type: MediaType,
    prefs: Sequence[FranchisePreference],
    min_items: int = 1,
) -> float:
    name = franchise_of(item)
    if not name:
        return 1.0
    key = name.lower()
    for p in prefs:
        if p.franchise_name.lower() != key or not p.applies_to(media_type):
            continue
        if not p.is_user_set and p.items_watched < min_items:
            continue
        return 1.0 + p.preference_score * 0.5
    return 1.0


def genre_boost(item: WatchedItem, weights: Sequence[GenreWeight]) -> float:
    if not item.genres or not weights:
        return 1.0
    by_genre = {w.genre.lower(): w.weight for w in weights}
    matched = [by_genre[g.lower()] for g in item.genres if g.lower() in by_genre]
    if not matched:
        return 1.0
    return 0.5 + (sum(matched) / len(matched)) * 0.5


def cap_weights(weights: dict[ItemId, float], max_ratio: float) -> dict[ItemId, float]:
    """Keep any single item from dominating: cap at max_ratio x mean."""
    if not weights or max_ratio <= 0:
        return weights
    mean = sum(weights.values()) / len(weights)
    cap = mean * max_ratio
    return {k: min(w, cap) for k, w in weights.items()}


def compute_item_weights(
    items: Sequence[WatchedItem],
    media_type: MediaType,
    now: datetime,
    params: BuildParams,
    *,
    franchise_prefs: Sequence[FranchisePreference] = (),
    genre_weights: Sequence[GenreWeight] = (),
    min_franchise_items: int = 1,
) -> dict[ItemId, float]:
    weights: dict[ItemId, float] = {}
    for it in items:
        w = (
            engagement_weight(it, media_type, params)
            * rating_factor(it)
            * recency_factor(it.last_played_at, now, params)
            * franchise_boost(it, media_type, franchise_prefs, min_franchise_items)
            * genre_boost(it, genre_weights)
        )
        # same item listed twice: keep the stronger signal
        weights[it.item_id] = max(w, weights.get(it.item_id, 0.0))
    return cap_weights(weights, params.max_weight_ratio)
