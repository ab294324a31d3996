from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Sequence

from qdrant_client import QdrantClient

from aperture_core.config import (
    DENSE_VECTOR_NAME,
    QDRANT_MOVIE_COLLECTION_NAME,
    QDRANT_SERIES_COLLECTION_NAME,
)
from aperture_core.types import EmbeddingModelSpec, EmbeddingVector, ItemId, MediaType

from .qdrant_filter import (
    EmbeddingModelIs,
    ExcludeItems,
    LibraryScope,
    ParentalCeiling,
    RetrievalFilter,
    build_qfilter,
)

log = logging.getLogger(__name__)

ExclusionMode = Literal["post_filter", "predicate"]

PAYLOAD_FIELDS = [
    "media_id",
    "title",
    "release_year",
    "genres",
    "collection",
    "network",
    "vote_average",
    "vote_count",
    "popularity",
    "library_id",
    "parental_rating_value",
    "embedding_model",
]


@dataclass
class RetrievedItem:
    item_id: ItemId
    similarity: float  # clamped to [0, 1]
    payload: dict[str, Any] = field(default_factory=dict)


class CandidateRetriever:
    """
    Nearest-neighbour search over the item index for one taste vector.

    Watched titles (unless `include_watched`) and `excluded_ids` are dropped
    after the query by default (`post_filter`): we over-fetch by the number
    of dropped ids, which can still under-fill when the index holds fewer
    eligible items than asked for. `predicate` pushes the exclusion into the
    query instead.
    """

    def __init__(
        self,
        client: QdrantClient,
        *,
        movie_collection: str = QDRANT_MOVIE_COLLECTION_NAME,
        series_collection: str = QDRANT_SERIES_COLLECTION_NAME,
        dense_vector_name: str = DENSE_VECTOR_NAME,
        exclusion_mode: ExclusionMode = "post_filter",
    ):
        self.client = client
        self.movie_collection = movie_collection
        self.series_collection = series_collection
        self.dense_name = dense_vector_name
        self.exclusion_mode = exclusion_mode

    def _col(self, media_type: MediaType) -> str:
        return self.movie_collection if media_type == MediaType.MOVIE else self.series_collection

    def retrieve(
        self,
        taste: EmbeddingVector,
        media_type: MediaType,
        *,
        model: EmbeddingModelSpec,
        watched_ids: Sequence[ItemId] = (),
        excluded_ids: Sequence[ItemId] = (),
        limit: int = 500,
        include_watched: bool = False,
        max_parental_rating: Optional[int] = None,
        library_ids: Optional[Sequence[str]] = None,
    ) -> list[RetrievedItem]:
        taste.require(model)
        if limit <= 0:
            return []

        collection = self._col(media_type)
        if not self.client.collection_exists(collection):
            log.warning("collection %s missing; no candidates", collection)
            return []

        drop = set() if include_watched else {str(i) for i in watched_ids}
        drop |= {str(i) for i in excluded_ids}
        spec: RetrievalFilter = (
            EmbeddingModelIs(model.model_id)
            & LibraryScope(tuple(library_ids) if library_ids else None)
            & ParentalCeiling(max_parental_rating)
        )
        query_limit = limit
        if drop:
            if self.exclusion_mode == "predicate":
                spec = spec & ExcludeItems(tuple(sorted(drop)))
            else:
                query_limit = limit + len(drop)

        res = self.client.query_points(
            collection_name=collection,
            query=taste.as_list(),
            using=self.dense_name,
            limit=query_limit,
            with_payload=PAYLOAD_FIELDS,
            query_filter=build_qfilter(spec),
            with_vectors=False,
        )

        out: list[RetrievedItem] = []
        for p in res.points:
            payload = dict(p.payload or {})
            item_id = str(payload.get("media_id", p.id))
            if item_id in drop:
                continue
            out.append(
                RetrievedItem(
                    item_id=item_id,
                    similarity=min(1.0, max(0.0, float(p.score))),
                    payload=payload,
                )
            )
            if len(out) >= limit:
                break

        if len(out) < limit and len(res.points) >= query_limit:
            log.debug("retrieval under-filled: %d/%d after exclusions", len(out), limit)
        return out
