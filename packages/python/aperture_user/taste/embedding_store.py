from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, Sequence

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams

from aperture_core.config import (
    DENSE_VECTOR_NAME,
    QDRANT_MOVIE_COLLECTION_NAME,
    QDRANT_SERIES_COLLECTION_NAME,
)
from aperture_core.types import EmbeddingVector, ItemId, MediaType

EmbedMap = Dict[ItemId, EmbeddingVector]

_POINT_NS = uuid.UUID("5b0c3f1e-8d7a-4d38-9a55-3f0e2c9b7a11")


def point_id_for(item_id: ItemId) -> str:
    """Qdrant only takes ints or UUIDs as point ids; derive a stable UUID."""
    return str(uuid.uuid5(_POINT_NS, str(item_id)))


class EmbeddingStore(Protocol):
    def get_many(self, media_type: MediaType, ids: Sequence[ItemId]) -> EmbedMap: ...


@dataclass
class IndexedItem:
    item_id: ItemId
    vector: EmbeddingVector
    title: str
    release_year: int | None = None
    genres: list[str] = field(default_factory=list)
    collection: str | None = None
    network: str | None = None  # series only
    vote_average: float | None = None
    vote_count: int | None = None
    popularity: float | None = None
    library_id: str | None = None
    parental_rating_value: int | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "media_id": self.item_id,
            "title": self.title,
            "release_year": self.release_year,
            "genres": list(self.genres),
            "collection": self.collection,
            "network": self.network,
            "vote_average": self.vote_average,
            "vote_count": self.vote_count,
            "popularity": self.popularity,
            "library_id": self.library_id,
            "parental_rating_value": self.parental_rating_value,
            "embedding_model": self.vector.model_id,
        }


class QdrantEmbeddingStore:
    def __init__(
        self,
        client: QdrantClient,
        *,
        movie_collection: str = QDRANT_MOVIE_COLLECTION_NAME,
        series_collection: str = QDRANT_SERIES_COLLECTION_NAME,
        vector_name: str = DENSE_VECTOR_NAME,
    ):
        self.client = client
        self.vector_name = vector_name
        self.collections = {
            MediaType.MOVIE: movie_collection,
            MediaType.SERIES: series_collection,
        }

    def ensure_collection(self, media_type: MediaType, dimension: int) -> None:
        coll = self.collections[media_type]
        if self.client.collection_exists(coll):
            return
        self.client.create_collection(
            collection_name=coll,
            vectors_config={self.vector_name: VectorParams(size=dimension, distance=Distance.COSINE)},
        )

    def upsert(self, media_type: MediaType, items: Sequence[IndexedItem]) -> int:
        if not items:
            return 0
        points = [
            PointStruct(
                id=point_id_for(it.item_id),
                vector={self.vector_name: it.vector.as_list()},
                payload=it.payload(),
            )
            for it in items
        ]
        self.client.upsert(collection_name=self.collections[media_type], points=points)
        return len(points)

    def get_many(self, media_type: MediaType, ids: Sequence[ItemId]) -> EmbedMap:
        if not ids:
            return {}
        coll = self.collections[media_type]
        if not self.client.collection_exists(coll):
            return {}
        points = self.client.retrieve(
            collection_name=coll,
            ids=[point_id_for(i) for i in ids],
            with_payload=["media_id", "embedding_model"],
            with_vectors=[self.vector_name],
        )
        out: EmbedMap = {}
        for p in points:
            payload = p.payload or {}
            vec = p.vector.get(self.vector_name) if isinstance(p.vector, dict) else p.vector
            if vec is None or "media_id" not in payload:
                continue
            arr = np.asarray(vec, dtype=np.float32)
            out[str(payload["media_id"])] = EmbeddingVector(
                model_id=str(payload.get("embedding_model") or ""),
                dimension=int(arr.shape[0]),
                values=arr,
            )
        return out
