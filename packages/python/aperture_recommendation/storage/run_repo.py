from __future__ import annotations

import logging
import threading
from typing import Mapping, Optional, Sequence

from anyio import to_thread
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from aperture_core.errors import NotFound, RunInProgressError
from aperture_core.types import ItemId, MediaType
from aperture_ranking.types import Candidate
from aperture_recommendation.evidence import EvidenceItem
from aperture_recommendation.types import (
    ACTIVE_STATUSES,
    ClearPolicy,
    RecommendationRun,
    RunStatus,
    RunType,
    StoredCandidate,
    StoredEvidence,
    check_transition,
)

from .db import ensure_ts, session_scope, utcnow
from .tables import CandidateRow, EvidenceRow, RecommendationRunRow

log = logging.getLogger(__name__)


def _run(row: RecommendationRunRow) -> RecommendationRun:
    return RecommendationRun(
        id=row.id,
        user_id=row.user_id,
        media_type=MediaType(row.media_type),
        run_type=RunType(row.run_type),
        channel_id=row.channel_id,
        status=RunStatus(row.status),
        candidate_count=row.candidate_count,
        selected_count=row.selected_count,
        duration_ms=row.duration_ms,
        error_message=row.error_message,
        created_at=ensure_ts(row.created_at),
        finished_at=ensure_ts(row.finished_at),
    )


def _candidate_row(run_id: str, c: Candidate, evidence: Sequence[EvidenceItem]) -> CandidateRow:
    row = CandidateRow(
        run_id=run_id,
        item_id=c.item_id,
        title=c.title,
        year=c.year,
        genres=list(c.genres),
        rank=c.rank,
        is_selected=c.is_selected,
        selected_rank=c.selected_rank,
        final_score=c.final_score,
        similarity_score=c.similarity,
        novelty_score=c.novelty,
        rating_score=c.rating_score,
        diversity_score=c.diversity_score,
        score_breakdown=c.breakdown.as_dict() if c.breakdown else {},
    )
    row.evidence = [
        EvidenceRow(similar_item_id=e.similar_item_id, similarity=e.similarity, evidence_type=e.evidence_type)
        for e in evidence
    ]
    return row


class SqlRunRepository:
    """
    Runs, their candidates and evidence.

    The active-run guard (one pending/running run per user and media type)
    is a check-then-insert serialised by a process-local lock.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory
        self._guard = threading.Lock()

    # ---------- Async facade ----------
    async def create_run(
        self,
        user_id: str,
        media_type: MediaType,
        run_type: RunType,
        channel_id: Optional[str] = None,
        clear_policy: Optional[ClearPolicy] = None,
    ) -> RecommendationRun:
        return await to_thread.run_sync(
            self.create_run_sync, user_id, media_type, run_type, channel_id, clear_policy
        )

    async def transition(
        self,
        run_id: str,
        target: RunStatus,
        *,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> RecommendationRun:
        return await to_thread.run_sync(
            lambda: self.transition_sync(run_id, target, error_message=error_message, duration_ms=duration_ms)
        )

    async def persist_results(
        self,
        run_id: str,
        candidates: Sequence[Candidate],
        evidence: Mapping[ItemId, Sequence[EvidenceItem]],
        duration_ms: int,
    ) -> RecommendationRun:
        return await to_thread.run_sync(self.persist_results_sync, run_id, candidates, evidence, duration_ms)

    async def clear_all(self, media_type: MediaType) -> int:
        return await to_thread.run_sync(self.clear_all_sync, media_type)

    # ---------- Private sync impls ----------
    def _active_run(self, s: Session, user_id: str, media_type: MediaType) -> RecommendationRunRow | None:
        return s.scalars(
            select(RecommendationRunRow).where(
                RecommendationRunRow.user_id == user_id,
                RecommendationRunRow.media_type == media_type.value,
                RecommendationRunRow.status.in_([st.value for st in ACTIVE_STATUSES]),
            )
        ).first()

    def has_active_sync(self, user_id: str, media_type: MediaType) -> bool:
        with session_scope(self.session_factory) as s:
            return self._active_run(s, user_id, media_type) is not None

    def create_run_sync(
        self,
        user_id: str,
        media_type: MediaType,
        run_type: RunType = RunType.SCHEDULED,
        channel_id: Optional[str] = None,
        clear_policy: Optional[ClearPolicy] = None,
    ) -> RecommendationRun:
        """Guard, optionally clear prior output, insert a pending run; one transaction."""
        with self._guard, session_scope(self.session_factory) as s:
            active = self._active_run(s, user_id, media_type)
            if active is not None:
                raise RunInProgressError(
                    f"run {active.id} is already {active.status} for {user_id}/{media_type.value}"
                )
            if clear_policy == "clear_all":
                self._delete_runs(s, user_id, media_type)
            elif clear_policy == "keep_history":
                self._delete_unselected(s, user_id, media_type)

            row = RecommendationRunRow(
                user_id=user_id,
                media_type=media_type.value,
                run_type=run_type.value,
                channel_id=channel_id,
                status=RunStatus.PENDING.value,
            )
            s.add(row)
            s.flush()
            return _run(row)

    def transition_sync(
        self,
        run_id: str,
        target: RunStatus,
        *,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> RecommendationRun:
        with session_scope(self.session_factory) as s:
            row = s.get(RecommendationRunRow, run_id)
            if row is None:
                raise NotFound(f"run {run_id} not found")
            check_transition(RunStatus(row.status), target)
            row.status = target.value
            if error_message is not None:
                row.error_message = error_message
            if duration_ms is not None:
                row.duration_ms = duration_ms
            if target not in ACTIVE_STATUSES:
                row.finished_at = utcnow()
            s.flush()
            return _run(row)

    def persist_results_sync(
        self,
        run_id: str,
        candidates: Sequence[Candidate],
        evidence: Mapping[ItemId, Sequence[EvidenceItem]],
        duration_ms: int,
    ) -> RecommendationRun:
        """Candidates, evidence and the completed status commit together or not at all."""
        with session_scope(self.session_factory) as s:
            row = s.get(RecommendationRunRow, run_id)
            if row is None:
                raise NotFound(f"run {run_id} not found")
            check_transition(RunStatus(row.status), RunStatus.COMPLETED)
            for c in candidates:
                s.add(_candidate_row(run_id, c, evidence.get(c.item_id, ()) if c.is_selected else ()))
            row.candidate_count = len(candidates)
            row.selected_count = sum(1 for c in candidates if c.is_selected)
            row.duration_ms = duration_ms
            row.status = RunStatus.COMPLETED.value
            row.finished_at = utcnow()
            s.flush()
            return _run(row)

    # ---------- Reads ----------
    def get_run_sync(self, run_id: str) -> Optional[RecommendationRun]:
        with session_scope(self.session_factory) as s:
            row = s.get(RecommendationRunRow, run_id)
            return _run(row) if row else None

    def list_runs_sync(self, user_id: str, media_type: MediaType) -> list[RecommendationRun]:
        with session_scope(self.session_factory) as s:
            rows = s.scalars(
                select(RecommendationRunRow)
                .where(
                    RecommendationRunRow.user_id == user_id,
                    RecommendationRunRow.media_type == media_type.value,
                )
                .order_by(RecommendationRunRow.created_at.desc())
            ).all()
            return [_run(r) for r in rows]

    def get_candidates_sync(self, run_id: str, *, selected_only: bool = False) -> list[StoredCandidate]:
        with session_scope(self.session_factory) as s:
            q = select(CandidateRow).where(CandidateRow.run_id == run_id)
            if selected_only:
                q = q.where(CandidateRow.is_selected.is_(True)).order_by(CandidateRow.selected_rank)
            else:
                q = q.order_by(CandidateRow.rank)
            rows = s.scalars(q).all()
            return [
                StoredCandidate(
                    item_id=r.item_id,
                    title=r.title,
                    rank=r.rank,
                    is_selected=r.is_selected,
                    selected_rank=r.selected_rank,
                    final_score=r.final_score,
                    similarity_score=r.similarity_score,
                    novelty_score=r.novelty_score,
                    rating_score=r.rating_score,
                    diversity_score=r.diversity_score,
                    score_breakdown=r.score_breakdown or {},
                    evidence=[
                        StoredEvidence(
                            similar_item_id=e.similar_item_id,
                            similarity=e.similarity,
                            evidence_type=e.evidence_type,
                        )
                        for e in sorted(r.evidence, key=lambda e: -e.similarity)
                    ],
                )
                for r in rows
            ]

    def count_rows_sync(self) -> dict[str, int]:
        with session_scope(self.session_factory) as s:
            return {
                "runs": s.scalar(select(func.count()).select_from(RecommendationRunRow)) or 0,
                "candidates": s.scalar(select(func.count()).select_from(CandidateRow)) or 0,
                "evidence": s.scalar(select(func.count()).select_from(EvidenceRow)) or 0,
            }

    # ---------- Deletes ----------
    def _user_run_ids(self, user_id: str, media_type: MediaType):
        return select(RecommendationRunRow.id).where(
            RecommendationRunRow.user_id == user_id,
            RecommendationRunRow.media_type == media_type.value,
            RecommendationRunRow.status.not_in([st.value for st in ACTIVE_STATUSES]),
        )

    def _delete_runs(self, s: Session, user_id: str, media_type: MediaType) -> int:
        # candidates and evidence go with the run (ON DELETE CASCADE)
        res = s.execute(
            delete(RecommendationRunRow).where(RecommendationRunRow.id.in_(self._user_run_ids(user_id, media_type)))
        )
        log.info("cleared %d %s runs for user=%s", res.rowcount or 0, media_type.value, user_id)
        return res.rowcount or 0

    def _delete_unselected(self, s: Session, user_id: str, media_type: MediaType) -> int:
        res = s.execute(
            delete(CandidateRow).where(
                CandidateRow.run_id.in_(self._user_run_ids(user_id, media_type)),
                CandidateRow.is_selected.is_(False),
            )
        )
        # only selected rows remain under those runs
        s.execute(
            update(RecommendationRunRow)
            .where(RecommendationRunRow.id.in_(self._user_run_ids(user_id, media_type)))
            .values(candidate_count=RecommendationRunRow.selected_count)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount or 0

    def clear_all_sync(self, media_type: MediaType) -> int:
        with self._guard, session_scope(self.session_factory) as s:
            res = s.execute(
                delete(RecommendationRunRow).where(
                    RecommendationRunRow.media_type == media_type.value,
                    RecommendationRunRow.status.not_in([st.value for st in ACTIVE_STATUSES]),
                )
            )
            n = res.rowcount or 0
        log.warning("admin clear: removed %d %s runs", n, media_type.value)
        return n
