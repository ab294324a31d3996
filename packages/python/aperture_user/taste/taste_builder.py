from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

import numpy as np

from aperture_core.errors import InsufficientDataError
from aperture_core.types import (
    BuildParams,
    EmbeddingModelSpec,
    EmbeddingVector,
    ItemId,
    MediaType,
    WatchedItem,
)
from aperture_user.signals.selectors import select_profile_items
from aperture_user.signals.weights import compute_item_weights
from aperture_user.taste.schemas import CustomInterest, FranchisePreference, GenreWeight


# ---- small utils ----
# L2 normalization
def _l2(x: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(x))
    return x if n == 0 else x / n


# weighted average vectors
def _wmean(vecs: list[np.ndarray], w: list[float]) -> np.ndarray:
    acc = np.zeros_like(vecs[0], dtype=np.float32)
    s = float(sum(w) or 1.0)
    for v, ww in zip(vecs, w):
        acc += v * ww
    return acc / s


@dataclass
class TasteInputs:
    media_type: MediaType
    watched: list[WatchedItem]
    franchise_prefs: list[FranchisePreference] = field(default_factory=list)
    genre_weights: list[GenreWeight] = field(default_factory=list)
    interests: list[CustomInterest] = field(default_factory=list)
    min_franchise_items: int = 2


# ---- main builder ----
def build_taste_vector(
    inputs: TasteInputs,
    *,
    get_item_embeddings: Callable[[Sequence[ItemId]], Mapping[ItemId, EmbeddingVector]],
    model: EmbeddingModelSpec,
    params: BuildParams,
    now: datetime | None = None,
) -> tuple[EmbeddingVector, dict[str, Any]]:
    """
    Build a normalized taste vector for one (user, media type):

    - Top watched items (favourites, most played, most recent) only.
    - Each item weighted by engagement, rating, recency, franchise and genre boosts.
    - Custom interests join the same weighted mean with their own weight.
    - Vectors missing or produced by another model are skipped.

    Raises InsufficientDataError when nothing usable remains.
    """
    now = now or datetime.now(timezone.utc)

    # 1) which titles feed the profile and how much each counts
    items = select_profile_items(inputs.watched, params.recent_watch_limit)
    weights = compute_item_weights(
        items,
        inputs.media_type,
        now,
        params,
        franchise_prefs=inputs.franchise_prefs,
        genre_weights=inputs.genre_weights,
        min_franchise_items=inputs.min_franchise_items,
    )

    # 2) fetch embeddings in one shot
    ids = list(weights.keys())
    vec_map: Mapping[ItemId, EmbeddingVector] = get_item_embeddings(ids) if ids else {}

    vecs: list[np.ndarray] = []
    ws: list[float] = []
    skipped_model = 0
    for mid in ids:
        v = vec_map.get(mid)
        if v is None:
            continue
        if not v.matches(model):
            skipped_model += 1
            continue
        if weights[mid] <= 0:
            continue
        vecs.append(np.asarray(v.values, dtype=np.float32))
        ws.append(weights[mid])
    item_n = len(vecs)

    # 3) custom interests, each with its own weight
    interest_n = 0
    for ci in inputs.interests:
        if ci.embedding is None or not ci.embedding.matches(model):
            continue
        w = params.interest_weight * ci.weight
        if w <= 0:
            continue
        vecs.append(np.asarray(ci.embedding.values, dtype=np.float32))
        ws.append(w)
        interest_n += 1

    if not vecs:
        raise InsufficientDataError(
            f"no usable {inputs.media_type.value} embeddings among {len(inputs.watched)} watched items"
        )

    # 4) combine + normalize
    combo = _l2(_wmean(vecs, ws)).astype(np.float32)
    if float(np.linalg.norm(combo)) == 0.0:
        raise InsufficientDataError("taste vector collapsed to zero")

    debug = {
        "watched_n": len(inputs.watched),
        "profile_items_n": len(items),
        "item_vectors_n": item_n,
        "interest_vectors_n": interest_n,
        "skipped_model_mismatch": skipped_model,
        "weight_sum": float(sum(ws)),
        "params": vars(params),
    }
    return model.vector(combo), debug
