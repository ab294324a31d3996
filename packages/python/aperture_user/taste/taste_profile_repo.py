from __future__ import annotations

import logging
from typing import Any, Literal, Optional, Sequence

import numpy as np
from anyio import to_thread
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from aperture_core.errors import NotFound
from aperture_core.types import EmbeddingVector, MediaType
from aperture_recommendation.storage.db import ensure_ts, session_scope, utcnow
from aperture_recommendation.storage.tables import (
    CustomInterestRow,
    FranchisePreferenceRow,
    GenreWeightRow,
    TasteProfileRow,
)

from .schemas import (
    CustomInterest,
    FranchisePreference,
    GenreWeight,
    ProfileSettingsUpdate,
    TasteProfile,
)

log = logging.getLogger(__name__)

UpdateMode = Literal["reset", "merge"]


def _vector(values: list[float] | None, model_id: str | None, dim: int | None) -> EmbeddingVector | None:
    if not values or not model_id:
        return None
    arr = np.asarray(values, dtype=np.float32)
    return EmbeddingVector(model_id=model_id, dimension=int(dim or arr.shape[0]), values=arr)


def _profile(row: TasteProfileRow) -> TasteProfile:
    return TasteProfile(
        user_id=row.user_id,
        media_type=MediaType(row.media_type),
        embedding=_vector(row.embedding, row.embedding_model, row.embedding_dim),
        is_locked=row.is_locked,
        refresh_interval_days=row.refresh_interval_days,
        min_franchise_items=row.min_franchise_items,
        min_franchise_size=row.min_franchise_size,
        auto_updated_at=ensure_ts(row.auto_updated_at),
        user_modified_at=ensure_ts(row.user_modified_at),
        created_at=ensure_ts(row.created_at),
    )


def _franchise(row: FranchisePreferenceRow) -> FranchisePreference:
    return FranchisePreference(
        user_id=row.user_id,
        franchise_name=row.franchise_name,
        media_type=row.media_type if row.media_type == "both" else MediaType(row.media_type),
        preference_score=row.preference_score,
        items_watched=row.items_watched,
        total_engagement=row.total_engagement,
        is_user_set=row.is_user_set,
        last_engaged_at=ensure_ts(row.last_engaged_at),
    )


def _interest(row: CustomInterestRow) -> CustomInterest:
    return CustomInterest(
        id=row.id,
        user_id=row.user_id,
        media_type=MediaType(row.media_type),
        interest_text=row.interest_text,
        embedding=_vector(row.embedding, row.embedding_model, None),
        weight=row.weight,
        created_at=ensure_ts(row.created_at),
    )


def _scope(value: MediaType | str) -> str:
    return value.value if isinstance(value, MediaType) else str(value)


class SqlTasteProfileRepo:
    """Taste profiles, franchise preferences, genre weights and custom interests."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    # ---------- Async facade ----------
    async def get_profile(self, user_id: str, media_type: MediaType) -> Optional[TasteProfile]:
        return await to_thread.run_sync(self.get_profile_sync, user_id, media_type)

    async def upsert_profile_embedding(
        self,
        user_id: str,
        media_type: MediaType,
        vector: EmbeddingVector,
        debug: dict[str, Any],
    ) -> TasteProfile:
        return await to_thread.run_sync(
            self.upsert_profile_embedding_sync, user_id, media_type, vector, debug
        )

    async def update_settings(
        self, user_id: str, media_type: MediaType, update: ProfileSettingsUpdate
    ) -> TasteProfile:
        return await to_thread.run_sync(self.update_settings_sync, user_id, media_type, update)

    async def get_franchise_prefs(self, user_id: str, media_type: MediaType) -> list[FranchisePreference]:
        return await to_thread.run_sync(self.get_franchise_prefs_sync, user_id, media_type)

    async def get_genre_weights(self, user_id: str) -> list[GenreWeight]:
        return await to_thread.run_sync(self.get_genre_weights_sync, user_id)

    async def get_interests(self, user_id: str, media_type: MediaType) -> list[CustomInterest]:
        return await to_thread.run_sync(self.get_interests_sync, user_id, media_type)

    # ---------- Profiles ----------
    def _profile_row(self, s: Session, user_id: str, media_type: MediaType) -> TasteProfileRow | None:
        return s.scalars(
            select(TasteProfileRow).where(
                TasteProfileRow.user_id == user_id,
                TasteProfileRow.media_type == media_type.value,
            )
        ).first()

    def get_profile_sync(self, user_id: str, media_type: MediaType) -> Optional[TasteProfile]:
        with session_scope(self.session_factory) as s:
            row = self._profile_row(s, user_id, media_type)
            return _profile(row) if row else None

    def upsert_profile_embedding_sync(
        self,
        user_id: str,
        media_type: MediaType,
        vector: EmbeddingVector,
        debug: dict[str, Any],
    ) -> TasteProfile:
        with session_scope(self.session_factory) as s:
            row = self._profile_row(s, user_id, media_type)
            if row is None:
                row = TasteProfileRow(user_id=user_id, media_type=media_type.value)
                s.add(row)
            row.embedding = vector.as_list()
            row.embedding_model = vector.model_id
            row.embedding_dim = vector.dimension
            row.build_debug = {k: v for k, v in debug.items() if k != "params"}
            row.auto_updated_at = utcnow()
            s.flush()
            return _profile(row)

    def update_settings_sync(
        self, user_id: str, media_type: MediaType, update: ProfileSettingsUpdate
    ) -> TasteProfile:
        with session_scope(self.session_factory) as s:
            row = self._profile_row(s, user_id, media_type)
            if row is None:
                row = TasteProfileRow(user_id=user_id, media_type=media_type.value)
                s.add(row)
            for key, value in update.model_dump(exclude_none=True).items():
                setattr(row, key, value)
            row.user_modified_at = utcnow()
            s.flush()
            return _profile(row)

    # ---------- Franchise preferences ----------
    def get_franchise_prefs_sync(self, user_id: str, media_type: MediaType) -> list[FranchisePreference]:
        with session_scope(self.session_factory) as s:
            rows = s.scalars(
                select(FranchisePreferenceRow)
                .where(
                    FranchisePreferenceRow.user_id == user_id,
                    FranchisePreferenceRow.media_type.in_([media_type.value, "both"]),
                )
                .order_by(FranchisePreferenceRow.franchise_name)
            ).all()
            return [_franchise(r) for r in rows]

    def set_franchise_pref_sync(
        self, user_id: str, franchise_name: str, media_type: MediaType | str, score: float
    ) -> FranchisePreference:
        """User override; auto-detection never touches it afterwards."""
        pref = FranchisePreference(
            user_id=user_id, franchise_name=franchise_name, media_type=media_type, preference_score=score
        )
        with session_scope(self.session_factory) as s:
            row = s.scalars(
                select(FranchisePreferenceRow).where(
                    FranchisePreferenceRow.user_id == user_id,
                    FranchisePreferenceRow.franchise_name == franchise_name,
                    FranchisePreferenceRow.media_type == _scope(media_type),
                )
            ).first()
            if row is None:
                row = FranchisePreferenceRow(
                    user_id=user_id, franchise_name=franchise_name, media_type=_scope(media_type)
                )
                s.add(row)
            row.preference_score = pref.preference_score
            row.is_user_set = True
            s.flush()
            return _franchise(row)

    def bulk_update_franchise_prefs_sync(
        self, user_id: str, prefs: Sequence[FranchisePreference], mode: UpdateMode = "reset"
    ) -> int:
        """
        Write auto-computed preferences.

        - reset: overwrite every auto row we computed a value for.
        - merge: only insert franchises the user does not have yet.
        User-set rows are never overwritten in either mode.
        """
        updated = 0
        with session_scope(self.session_factory) as s:
            for p in prefs:
                row = s.scalars(
                    select(FranchisePreferenceRow).where(
                        FranchisePreferenceRow.user_id == user_id,
                        FranchisePreferenceRow.franchise_name == p.franchise_name,
                        FranchisePreferenceRow.media_type == _scope(p.media_type),
                    )
                ).first()
                if row is not None and (row.is_user_set or mode == "merge"):
                    continue
                if row is None:
                    row = FranchisePreferenceRow(
                        user_id=user_id, franchise_name=p.franchise_name, media_type=_scope(p.media_type)
                    )
                    s.add(row)
                row.preference_score = p.preference_score
                row.items_watched = p.items_watched
                row.total_engagement = p.total_engagement
                row.last_engaged_at = p.last_engaged_at
                row.is_user_set = False
                updated += 1
        log.info("franchise prefs user=%s mode=%s updated=%d", user_id, mode, updated)
        return updated

    # ---------- Genre weights ----------
    def get_genre_weights_sync(self, user_id: str) -> list[GenreWeight]:
        with session_scope(self.session_factory) as s:
            rows = s.scalars(
                select(GenreWeightRow).where(GenreWeightRow.user_id == user_id).order_by(GenreWeightRow.genre)
            ).all()
            return [
                GenreWeight(user_id=r.user_id, genre=r.genre, weight=r.weight, is_user_set=r.is_user_set)
                for r in rows
            ]

    def set_genre_weight_sync(self, user_id: str, genre: str, weight: float) -> GenreWeight:
        gw = GenreWeight(user_id=user_id, genre=genre, weight=weight, is_user_set=True)
        with session_scope(self.session_factory) as s:
            row = s.scalars(
                select(GenreWeightRow).where(GenreWeightRow.user_id == user_id, GenreWeightRow.genre == genre)
            ).first()
            if row is None:
                row = GenreWeightRow(user_id=user_id, genre=genre)
                s.add(row)
            row.weight = gw.weight
            row.is_user_set = True
        return gw

    def bulk_update_genre_weights_sync(
        self, user_id: str, weights: Sequence[GenreWeight], mode: UpdateMode = "reset"
    ) -> int:
        updated = 0
        with session_scope(self.session_factory) as s:
            for w in weights:
                row = s.scalars(
                    select(GenreWeightRow).where(GenreWeightRow.user_id == user_id, GenreWeightRow.genre == w.genre)
                ).first()
                if row is not None and (row.is_user_set or mode == "merge"):
                    continue
                if row is None:
                    row = GenreWeightRow(user_id=user_id, genre=w.genre)
                    s.add(row)
                row.weight = w.weight
                row.is_user_set = False
                updated += 1
        log.info("genre weights user=%s mode=%s updated=%d", user_id, mode, updated)
        return updated

    # ---------- Custom interests ----------
    def get_interests_sync(self, user_id: str, media_type: MediaType) -> list[CustomInterest]:
        with session_scope(self.session_factory) as s:
            rows = s.scalars(
                select(CustomInterestRow)
                .where(CustomInterestRow.user_id == user_id, CustomInterestRow.media_type == media_type.value)
                .order_by(CustomInterestRow.created_at, CustomInterestRow.id)
            ).all()
            return [_interest(r) for r in rows]

    def add_interest_sync(
        self,
        user_id: str,
        media_type: MediaType,
        text: str,
        *,
        weight: float = 1.0,
        embedding: EmbeddingVector | None = None,
    ) -> CustomInterest:
        with session_scope(self.session_factory) as s:
            row = CustomInterestRow(
                user_id=user_id,
                media_type=media_type.value,
                interest_text=text.strip(),
                weight=weight,
                embedding=embedding.as_list() if embedding else None,
                embedding_model=embedding.model_id if embedding else None,
            )
            s.add(row)
            s.flush()
            return _interest(row)

    def set_interest_embedding_sync(self, interest_id: str, embedding: EmbeddingVector) -> None:
        with session_scope(self.session_factory) as s:
            row = s.get(CustomInterestRow, interest_id)
            if row is None:
                raise NotFound(f"custom interest {interest_id} not found")
            row.embedding = embedding.as_list()
            row.embedding_model = embedding.model_id

    def remove_interest_sync(self, user_id: str, interest_id: str) -> bool:
        with session_scope(self.session_factory) as s:
            res = s.execute(
                delete(CustomInterestRow).where(
                    CustomInterestRow.id == interest_id, CustomInterestRow.user_id == user_id
                )
            )
            return (res.rowcount or 0) > 0

