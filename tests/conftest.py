from typing import Dict, List, Optional

import hashlib
import time
from datetime import datetime, timedelta, timezone

import pytest
from qdrant_client import QdrantClient

from aperture_core.config import EngineSettings
from aperture_core.errors import ProviderError
from aperture_core.types import EmbeddingModelSpec, EmbeddingVector, MediaType, WatchedItem
from aperture_jobs.progress import JobProgressTracker
from aperture_recommendation.orchestrator import RecommendationOrchestrator
from aperture_recommendation.storage.db import create_schema, get_engine, make_session_factory
from aperture_recommendation.storage.run_repo import SqlRunRepository
from aperture_retrieval.base_retriever import CandidateRetriever
from aperture_user.directory import UserRef
from aperture_user.taste.embedding_store import IndexedItem, QdrantEmbeddingStore
from aperture_user.taste.taste_profile_repo import SqlTasteProfileRepo
from aperture_user.taste.taste_profile_service import TasteProfileService

MODEL = EmbeddingModelSpec(model_id="test-embed", dimension=8)
NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)

# axes: 0 sci-fi, 1 drama, 2 comedy, 3 horror, 4 family, 5-7 unused
def vec(*xs: float, model: EmbeddingModelSpec = MODEL) -> EmbeddingVector:
    vals = list(xs) + [0.0] * (model.dimension - len(xs))
    return model.vector(vals)


def _item(item_id, title, v, genres, **kw) -> IndexedItem:
    return IndexedItem(item_id=item_id, vector=v, title=title, genres=genres, **kw)


CATALOG: List[IndexedItem] = [
    _item("m1", "Star Trek: First Contact", vec(1.0, 0.1), ["Science Fiction"],
          collection="Star Trek Collection", vote_average=7.3, vote_count=4000, popularity=20.0, parental_rating_value=13),
    _item("m2", "Star Trek: Insurrection", vec(0.95, 0.15), ["Science Fiction"],
          collection="Star Trek Collection", vote_average=6.4, vote_count=2000, popularity=12.0, parental_rating_value=10),
    _item("m3", "Alien", vec(0.7, 0.0, 0.0, 0.6), ["Science Fiction", "Horror"],
          vote_average=8.2, vote_count=15000, popularity=40.0, parental_rating_value=17),
    _item("m4", "Arrival", vec(0.8, 0.5), ["Science Fiction", "Drama"],
          vote_average=7.6, vote_count=18000, popularity=30.0, parental_rating_value=13),
    _item("m5", "The Notebook", vec(0.0, 1.0, 0.1), ["Drama", "Romance"],
          vote_average=7.9, vote_count=11000, popularity=25.0, parental_rating_value=13),
    _item("m6", "Superbad", vec(0.0, 0.1, 1.0), ["Comedy"],
          vote_average=7.2, vote_count=9000, popularity=18.0, parental_rating_value=17),
    _item("m7", "Hereditary", vec(0.1, 0.2, 0.0, 1.0), ["Horror"],
          vote_average=7.3, vote_count=7000, popularity=22.0, parental_rating_value=17),
    _item("m8", "Interstellar", vec(0.9, 0.4), ["Science Fiction", "Drama"],
          vote_average=8.4, vote_count=35000, popularity=60.0, parental_rating_value=13),
    _item("m9", "Moon", vec(0.85, 0.3), ["Science Fiction", "Drama"],
          vote_average=7.6, vote_count=5000, popularity=8.0, library_id="lib-b"),
    _item("m10", "Paddington", vec(0.05, 0.1, 0.6, 0.0, 1.0), ["Family", "Comedy"],
          vote_average=7.2, vote_count=3000, popularity=15.0, parental_rating_value=0),
]


def watched(item_id: str, title: str, **kw) -> WatchedItem:
    kw.setdefault("last_played_at", NOW - timedelta(days=10))
    return WatchedItem(item_id=item_id, title=title, **kw)


class FakeWatchHistory:
    def __init__(
        self,
        by_user: Optional[Dict[str, List[WatchedItem]]] = None,
        broken: Optional[set] = None,
        disliked: Optional[Dict[str, List[str]]] = None,
    ):
        self.by_user = by_user or {}
        self.broken = broken or set()
        self.disliked = disliked or {}

    def watched_items(self, user_id: str, media_type: MediaType) -> List[WatchedItem]:
        if user_id in self.broken:
            raise RuntimeError(f"history backend down for {user_id}")
        return list(self.by_user.get(user_id, []))

    def disliked_items(self, user_id: str, media_type: MediaType) -> List[str]:
        return list(self.disliked.get(user_id, []))


class FakeUserDirectory:
    def __init__(self, users: List[UserRef]):
        self.users = {u.id: u for u in users}

    def eligible_users(self, media_type: MediaType) -> List[UserRef]:
        return list(self.users.values())

    def get_user(self, user_id: str) -> Optional[UserRef]:
        return self.users.get(user_id)


class FakeEmbeddingProvider:
    """Deterministic text -> vector, with optional failure or delay."""

    def __init__(self, model: EmbeddingModelSpec = MODEL, *, fail: Optional[ProviderError] = None, delay: float = 0.0):
        self.model = model
        self.fail = fail
        self.delay = delay
        self.calls: List[List[str]] = []

    def _values(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 for b in digest[: self.model.dimension]]

    def embed(self, text: str) -> EmbeddingVector:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        if self.delay:
            time.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return [self.model.vector(self._values(t)) for t in texts]


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def qdrant() -> QdrantClient:
    return QdrantClient(":memory:")


@pytest.fixture()
def store(qdrant) -> QdrantEmbeddingStore:
    s = QdrantEmbeddingStore(qdrant)
    s.ensure_collection(MediaType.MOVIE, MODEL.dimension)
    s.upsert(MediaType.MOVIE, CATALOG)
    return s


@pytest.fixture()
def sessions(tmp_path):
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'aperture.db'}")
    create_schema(engine)
    try:
        yield make_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture()
def taste_repo(sessions) -> SqlTasteProfileRepo:
    return SqlTasteProfileRepo(sessions)


@pytest.fixture()
def run_repo(sessions) -> SqlRunRepository:
    return SqlRunRepository(sessions)


@pytest.fixture()
def history() -> FakeWatchHistory:
    return FakeWatchHistory(
        {
            "u1": [
                watched("m1", "Star Trek: First Contact", genres=["Science Fiction"],
                        collection_name="Star Trek Collection", is_favorite=True, play_count=3, user_rating=9),
                watched("m4", "Arrival", genres=["Science Fiction", "Drama"], user_rating=8),
            ],
            "u2": [],
        }
    )


@pytest.fixture()
def settings() -> EngineSettings:
    return EngineSettings(
        embedding_model=MODEL.model_id,
        embedding_dim=MODEL.dimension,
        database_url="sqlite+pysqlite:///:memory:",
        max_concurrent_runs=2,
        provider_timeout_s=2.0,
    )


@pytest.fixture()
def make_orchestrator(settings, run_repo, taste_repo, store, qdrant):
    def _make(history, users, *, provider=None, retriever=None, overrides=None, progress=None):
        taste = TasteProfileService(
            taste_repo,
            history,
            store,
            model=MODEL,
            provider=provider,
            provider_timeout_s=settings.provider_timeout_s,
        )
        return RecommendationOrchestrator(
            settings=settings,
            runs=run_repo,
            taste=taste,
            watch_history=history,
            users=FakeUserDirectory(users),
            retriever=retriever or CandidateRetriever(qdrant),
            embeddings=store,
            progress=progress or JobProgressTracker(),
            pipeline_overrides=overrides,
        )

    return _make
