from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from aperture_core.types import EmbeddingModelSpec, MediaType


QDRANT_MOVIE_COLLECTION_NAME = "aperture_movies"
QDRANT_SERIES_COLLECTION_NAME = "aperture_series"
DENSE_VECTOR_NAME = "dense_vector"

EMBEDDING_MODEL = "text-embedding-3-small"  # OpenAI embedding model used for items, interests and taste vectors
EMBEDDING_DIM = 1536

# how many watched titles feed a taste vector
RECENT_WATCH_LIMIT = {MediaType.MOVIE: 50, MediaType.SERIES: 100}


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APERTURE_", env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///aperture.db"
    qdrant_endpoint: str | None = None
    qdrant_api_key: str | None = None
    qdrant_movie_collection: str = QDRANT_MOVIE_COLLECTION_NAME
    qdrant_series_collection: str = QDRANT_SERIES_COLLECTION_NAME

    embedding_model: str = EMBEDDING_MODEL
    embedding_dim: int = EMBEDDING_DIM
    openai_api_key: str | None = None
    provider_timeout_s: float = 30.0
    provider_max_attempts: int = 4

    max_concurrent_runs: int = 4
    min_watched_items: int = 1
    evidence_top_n: int = 3
    exclusion_mode: Literal["post_filter", "predicate"] = "post_filter"

    log_level: str = "INFO"

    def active_model(self) -> EmbeddingModelSpec:
        return EmbeddingModelSpec(model_id=self.embedding_model, dimension=self.embedding_dim)
