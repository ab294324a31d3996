from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping, Sequence

import numpy as np

from aperture_core.types import EmbeddingModelSpec, EmbeddingVector, ItemId, WatchedItem
from aperture_ranking.types import Candidate

EvidenceType = Literal["favorite", "highly_rated", "watched"]


@dataclass(frozen=True)
class EvidenceItem:
    similar_item_id: ItemId
    similarity: float
    evidence_type: EvidenceType


def evidence_type_for(item: WatchedItem) -> EvidenceType:
    if item.is_favorite:
        return "favorite"
    # rewatched counts as a strong signal
    if (item.play_count or 0) > 1:
        return "highly_rated"
    return "watched"


def _unit_rows(vectors: list[np.ndarray]) -> np.ndarray:
    mat = np.vstack(vectors).astype(np.float32)
    norms = np.linalg.norm(mat, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return mat / norms


def build_evidence(
    selected: Sequence[Candidate],
    watched: Sequence[WatchedItem],
    *,
    embeddings: Mapping[ItemId, EmbeddingVector],
    model: EmbeddingModelSpec,
    top_n: int = 3,
) -> dict[ItemId, list[EvidenceItem]]:
    """
    For each selected candidate, the watched items closest to it (cosine
    over item embeddings). Items without a vector under the active model
    are left out on both sides.
    """
    if top_n <= 0 or not selected or not watched:
        return {}

    history = [w for w in watched if w.item_id in embeddings and embeddings[w.item_id].matches(model)]
    if not history:
        return {}
    hist_mat = _unit_rows([embeddings[w.item_id].values for w in history])

    out: dict[ItemId, list[EvidenceItem]] = {}
    for c in selected:
        vec = embeddings.get(c.item_id)
        if vec is None or not vec.matches(model):
            continue
        q = _unit_rows([vec.values])[0]
        sims = hist_mat @ q
        # stable: equal similarities keep watch-history order
        order = sorted(range(len(history)), key=lambda i: (-float(sims[i]), i))
        out[c.item_id] = [
            EvidenceItem(
                similar_item_id=history[i].item_id,
                similarity=float(sims[i]),
                evidence_type=evidence_type_for(history[i]),
            )
            for i in order[:top_n]
        ]
    return out
