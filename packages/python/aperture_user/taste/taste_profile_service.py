from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Sequence

from anyio import to_thread

from aperture_core.config import RECENT_WATCH_LIMIT
from aperture_core.errors import StaleProfileError
from aperture_core.types import (
    BuildParams,
    EmbeddingModelSpec,
    EmbeddingVector,
    ItemId,
    MediaType,
    WatchedItem,
)
from aperture_embedding.calls import embed_texts
from aperture_embedding.provider import EmbeddingProvider
from aperture_user.directory import WatchHistoryStore
from aperture_user.signals.franchise import (
    collect_franchise_stats,
    collect_genre_stats,
    decay_toward_neutral,
    franchise_preference_score,
    genre_weight,
)
from aperture_user.taste.taste_builder import TasteInputs, build_taste_vector

from .embedding_store import EmbeddingStore
from .schemas import (
    CustomInterest,
    FranchisePreference,
    GenreWeight,
    ProfileSettingsUpdate,
    ProfileState,
    TasteProfile,
    profile_state,
)
from .taste_profile_repo import SqlTasteProfileRepo, UpdateMode

log = logging.getLogger(__name__)

LibraryTotals = Callable[[MediaType], Mapping[str, int]]


def default_params(media_type: MediaType) -> BuildParams:
    return BuildParams(recent_watch_limit=RECENT_WATCH_LIMIT[media_type])


def compute_franchise_preferences(
    user_id: str,
    media_type: MediaType,
    watched: Sequence[WatchedItem],
    *,
    library_totals: Mapping[str, int] | None = None,
    min_franchise_size: int = 1,
    now: datetime,
) -> list[FranchisePreference]:
    out: list[FranchisePreference] = []
    for st in collect_franchise_stats(watched, media_type, library_totals):
        if st.total_in_library < min_franchise_size:
            continue
        score = decay_toward_neutral(franchise_preference_score(st), st.last_engaged_at, now)
        out.append(
            FranchisePreference(
                user_id=user_id,
                franchise_name=st.franchise_name,
                media_type=media_type,
                preference_score=score,
                items_watched=st.items_watched,
                total_engagement=st.total_engagement,
                last_engaged_at=st.last_engaged_at,
            )
        )
    return out


def compute_genre_weights(
    user_id: str, media_type: MediaType, watched: Sequence[WatchedItem]
) -> list[GenreWeight]:
    stats = collect_genre_stats(watched, media_type)
    return [GenreWeight(user_id=user_id, genre=st.genre, weight=genre_weight(st, stats)) for st in stats]


class TasteProfileService:
    def __init__(
        self,
        repo: SqlTasteProfileRepo,
        watch_history: WatchHistoryStore,
        embeddings: EmbeddingStore,
        *,
        model: EmbeddingModelSpec,
        provider: EmbeddingProvider | None = None,
        provider_timeout_s: float = 30.0,
        library_totals: LibraryTotals | None = None,
    ):
        self.repo = repo
        self.watch_history = watch_history
        self.embeddings = embeddings
        self.model = model
        self.provider = provider
        self.provider_timeout_s = provider_timeout_s
        self.library_totals = library_totals

    # Existence / state
    async def get_profile(self, user_id: str, media_type: MediaType) -> TasteProfile | None:
        return await self.repo.get_profile(user_id, media_type)

    async def state(self, user_id: str, media_type: MediaType, now: datetime | None = None) -> ProfileState:
        profile = await self.repo.get_profile(user_id, media_type)
        return profile_state(profile, self.model, now or datetime.now(timezone.utc))

    async def ensure_profile(
        self,
        user_id: str,
        media_type: MediaType,
        *,
        watched: Sequence[WatchedItem] | None = None,
        params: BuildParams | None = None,
        now: datetime | None = None,
    ) -> TasteProfile:
        """
        Return a profile usable for scoring under the active model.

        Fresh profiles are reused; locked ones are reused while their vector
        is still comparable. Anything else is rebuilt from watch history.
        """
        now = now or datetime.now(timezone.utc)
        profile = await self.repo.get_profile(user_id, media_type)
        state = profile_state(profile, self.model, now)

        if profile is not None and profile.is_locked:
            if state in (ProfileState.FRESH, ProfileState.EXPIRED):
                return profile
            raise StaleProfileError(
                f"locked {media_type.value} profile for {user_id} is {state.value} "
                f"under {self.model.model_id}; unlock it or force a rebuild"
            )

        if state == ProfileState.FRESH:
            return profile
        log.info("rebuilding %s profile user=%s state=%s", media_type.value, user_id, state.value)
        return await self.rebuild(user_id, media_type=media_type, watched=watched, params=params, now=now)

    # Rebuild & store
    async def rebuild(
        self,
        user_id: str,
        *,
        media_type: MediaType,
        watched: Sequence[WatchedItem] | None = None,
        params: BuildParams | None = None,
        force: bool = False,
        refresh_preferences: bool = True,
        now: datetime | None = None,
    ) -> TasteProfile:
        now = now or datetime.now(timezone.utc)
        params = params or default_params(media_type)

        profile = await self.repo.get_profile(user_id, media_type)
        if profile is not None and profile.is_locked and not force:
            log.info("profile user=%s media=%s is locked; skip rebuild", user_id, media_type.value)
            return profile

        if watched is None:
            watched = await to_thread.run_sync(self.watch_history.watched_items, user_id, media_type)
        watched = list(watched)

        if refresh_preferences:
            await self.refresh_preferences(
                user_id,
                media_type,
                watched=watched,
                min_franchise_size=profile.min_franchise_size if profile else 2,
                now=now,
            )
        await self.embed_missing_interests(user_id, media_type)

        franchise_prefs = await self.repo.get_franchise_prefs(user_id, media_type)
        genre_weights = await self.repo.get_genre_weights(user_id)
        interests = await self.repo.get_interests(user_id, media_type)

        # Embedding fetcher from Qdrant for watched items (keep builder pure)
        def get_item_embeddings(ids: Sequence[ItemId]) -> Mapping[ItemId, EmbeddingVector]:
            return self.embeddings.get_many(media_type, ids)

        inputs = TasteInputs(
            media_type=media_type,
            watched=watched,
            franchise_prefs=franchise_prefs,
            genre_weights=genre_weights,
            interests=interests,
            min_franchise_items=profile.min_franchise_items if profile else 2,
        )
        vector, debug = await to_thread.run_sync(
            lambda: build_taste_vector(
                inputs,
                get_item_embeddings=get_item_embeddings,
                model=self.model,
                params=params,
                now=now,
            )
        )
        log.info(
            "built %s taste vector user=%s items=%d interests=%d",
            media_type.value,
            user_id,
            debug["item_vectors_n"],
            debug["interest_vectors_n"],
        )
        return await self.repo.upsert_profile_embedding(user_id, media_type, vector, debug)

    # Franchise / genre detection
    async def refresh_preferences(
        self,
        user_id: str,
        media_type: MediaType,
        *,
        watched: Sequence[WatchedItem] | None = None,
        mode: UpdateMode = "reset",
        min_franchise_size: int = 2,
        now: datetime | None = None,
    ) -> dict[str, int]:
        now = now or datetime.now(timezone.utc)
        if watched is None:
            watched = await to_thread.run_sync(self.watch_history.watched_items, user_id, media_type)
        totals = self.library_totals(media_type) if self.library_totals else None

        prefs = compute_franchise_preferences(
            user_id,
            media_type,
            watched,
            library_totals=totals,
            min_franchise_size=min_franchise_size,
            now=now,
        )
        genres = compute_genre_weights(user_id, media_type, watched)

        f_n = await to_thread.run_sync(self.repo.bulk_update_franchise_prefs_sync, user_id, prefs, mode)
        g_n = await to_thread.run_sync(self.repo.bulk_update_genre_weights_sync, user_id, genres, mode)
        return {"franchises": f_n, "genres": g_n}

    # Settings
    async def update_settings(
        self, user_id: str, media_type: MediaType, update: ProfileSettingsUpdate
    ) -> TasteProfile:
        return await self.repo.update_settings(user_id, media_type, update)

    # Custom interests
    async def add_interest(
        self, user_id: str, media_type: MediaType, text: str, *, weight: float = 1.0
    ) -> CustomInterest:
        embedding = None
        if self.provider is not None:
            [embedding] = await embed_texts(self.provider, [text], timeout_s=self.provider_timeout_s)
        return await to_thread.run_sync(
            lambda: self.repo.add_interest_sync(user_id, media_type, text, weight=weight, embedding=embedding)
        )

    async def remove_interest(self, user_id: str, interest_id: str) -> bool:
        return await to_thread.run_sync(self.repo.remove_interest_sync, user_id, interest_id)

    async def embed_missing_interests(self, user_id: str, media_type: MediaType) -> int:
        """Embed interests that have no vector (or one from an older model)."""
        if self.provider is None:
            return 0
        interests = await self.repo.get_interests(user_id, media_type)
        todo = [ci for ci in interests if ci.embedding is None or not ci.embedding.matches(self.model)]
        if not todo:
            return 0
        vectors = await embed_texts(
            self.provider, [ci.interest_text for ci in todo], timeout_s=self.provider_timeout_s
        )
        for ci, vec in zip(todo, vectors):
            await to_thread.run_sync(self.repo.set_interest_embedding_sync, ci.id, vec)
        return len(todo)
