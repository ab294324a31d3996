from __future__ import annotations

import logging
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv
from qdrant_client import QdrantClient

from aperture_core.config import EngineSettings
from aperture_core.logging_utils import configure_logging
from aperture_embedding.provider import EmbeddingProvider, OpenAIEmbeddingProvider
from aperture_jobs.progress import JobProgressTracker
from aperture_recommendation.orchestrator import RecommendationOrchestrator
from aperture_recommendation.storage.db import create_schema, get_engine, make_session_factory
from aperture_recommendation.storage.run_repo import SqlRunRepository
from aperture_retrieval.base_retriever import CandidateRetriever
from aperture_user.directory import UserDirectory, WatchHistoryStore
from aperture_user.taste.embedding_store import QdrantEmbeddingStore
from aperture_user.taste.taste_profile_repo import SqlTasteProfileRepo
from aperture_user.taste.taste_profile_service import TasteProfileService

log = logging.getLogger(__name__)


def load_settings() -> EngineSettings:
    # OPENAI_API_KEY and friends live in the same .env
    load_dotenv(find_dotenv(usecwd=True), override=False)
    return EngineSettings()


@dataclass
class EngineServices:
    settings: EngineSettings
    qdrant: QdrantClient
    embeddings: QdrantEmbeddingStore
    runs: SqlRunRepository
    taste: TasteProfileService
    progress: JobProgressTracker
    orchestrator: RecommendationOrchestrator


def build_engine(
    settings: EngineSettings,
    *,
    watch_history: WatchHistoryStore,
    users: UserDirectory,
    qdrant: QdrantClient | None = None,
    provider: EmbeddingProvider | None = None,
    create_tables: bool = True,
) -> EngineServices:
    """Wire every component from settings; callers supply history and users."""
    configure_logging(settings.log_level)

    if qdrant is None:
        if not settings.qdrant_endpoint:
            raise RuntimeError("Missing APERTURE_QDRANT_ENDPOINT")
        qdrant = QdrantClient(url=settings.qdrant_endpoint, api_key=settings.qdrant_api_key)
    model = settings.active_model()
    if provider is None and settings.openai_api_key:
        provider = OpenAIEmbeddingProvider(
            model,
            api_key=settings.openai_api_key,
            max_attempts=settings.provider_max_attempts,
        )

    engine = get_engine(settings.database_url)
    if create_tables:
        create_schema(engine)
    sessions = make_session_factory(engine)

    embeddings = QdrantEmbeddingStore(
        qdrant,
        movie_collection=settings.qdrant_movie_collection,
        series_collection=settings.qdrant_series_collection,
    )
    runs = SqlRunRepository(sessions)
    taste = TasteProfileService(
        SqlTasteProfileRepo(sessions),
        watch_history,
        embeddings,
        model=model,
        provider=provider,
        provider_timeout_s=settings.provider_timeout_s,
    )
    retriever = CandidateRetriever(
        qdrant,
        movie_collection=settings.qdrant_movie_collection,
        series_collection=settings.qdrant_series_collection,
        exclusion_mode=settings.exclusion_mode,
    )
    progress = JobProgressTracker()
    orchestrator = RecommendationOrchestrator(
        settings=settings,
        runs=runs,
        taste=taste,
        watch_history=watch_history,
        users=users,
        retriever=retriever,
        embeddings=embeddings,
        progress=progress,
    )
    log.info("engine ready model=%s/%d db=%s", model.model_id, model.dimension, engine.url.get_backend_name())
    return EngineServices(
        settings=settings,
        qdrant=qdrant,
        embeddings=embeddings,
        runs=runs,
        taste=taste,
        progress=progress,
        orchestrator=orchestrator,
    )
