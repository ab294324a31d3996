from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Optional, Sequence

import anyio
from anyio import to_thread

from aperture_core.config import EngineSettings
from aperture_core.errors import DomainError, NotFound, RunInProgressError
from aperture_core.types import MediaType, WatchedItem
from aperture_jobs.progress import JobProgressTracker
from aperture_ranking.diversification import select_diverse
from aperture_ranking.scoring import ScoringContext, score_candidates
from aperture_ranking.types import Candidate
from aperture_recommendation.evidence import build_evidence
from aperture_recommendation.storage.run_repo import SqlRunRepository
from aperture_recommendation.types import (
    BulkRunSummary,
    ClearPolicy,
    RecommendationRun,
    RunStatus,
    RunType,
    resolve_pipeline_config,
)
from aperture_retrieval.base_retriever import CandidateRetriever
from aperture_user.directory import UserDirectory, UserRef, WatchHistoryStore
from aperture_user.signals.franchise import normalize_rating
from aperture_user.taste.embedding_store import EmbeddingStore
from aperture_user.taste.taste_profile_service import TasteProfileService, default_params

log = logging.getLogger(__name__)

RUN_STEPS = [
    "Loading watch history",
    "Building taste profile",
    "Retrieving candidates",
    "Scoring candidates",
    "Selecting recommendations",
    "Storing results",
]


class _Cancelled(Exception):
    pass


def user_rating_mean(watched: Sequence[WatchedItem]) -> Optional[float]:
    """Mean of the user's own ratings on a 10-point scale."""
    rs = [normalize_rating(float(w.user_rating)) * 10.0 for w in watched if w.user_rating]
    return sum(rs) / len(rs) if rs else None


class RecommendationOrchestrator:
    """
    Per-user pipeline:
      1) guard + create run (pending -> running)
      2) taste profile (reuse fresh/locked, else rebuild)
      3) retrieve nearest unwatched items
      4) score (similarity / rating / novelty)
      5) diverse selection
      6) evidence + atomic persist -> completed

    Cancellation is checked between stages and ignored once persisting.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings,
        runs: SqlRunRepository,
        taste: TasteProfileService,
        watch_history: WatchHistoryStore,
        users: UserDirectory,
        retriever: CandidateRetriever,
        embeddings: EmbeddingStore,
        progress: JobProgressTracker | None = None,
        pipeline_overrides: Mapping[MediaType, Mapping[str, Any]] | None = None,
    ):
        self.settings = settings
        self.runs = runs
        self.taste = taste
        self.watch_history = watch_history
        self.users = users
        self.retriever = retriever
        self.embeddings = embeddings
        self.progress = progress
        self.pipeline_overrides = dict(pipeline_overrides or {})
        self._in_flight: set[str] = set()
        self._cancel_requested: set[str] = set()

    # ---- cancellation ----
    def cancel(self, run_id: str) -> bool:
        """Ask an in-flight run to stop at its next stage boundary."""
        if run_id not in self._in_flight:
            return False
        self._cancel_requested.add(run_id)
        log.info("cancel requested for run %s", run_id)
        return True

    def in_flight(self) -> list[str]:
        return sorted(self._in_flight)

    def _check_cancel(self, run_id: str) -> None:
        if run_id in self._cancel_requested:
            raise _Cancelled()

    def _step(self, job_id: str | None, index: int) -> None:
        if self.progress is not None and job_id is not None:
            self.progress.set_step(job_id, index, RUN_STEPS[index])

    # ---- single user ----
    async def run_for_user(
        self,
        user: UserRef,
        media_type: MediaType,
        *,
        run_type: RunType = RunType.SCHEDULED,
        channel_id: str | None = None,
        watched: Sequence[WatchedItem] | None = None,
        clear_policy: ClearPolicy | None = None,
        job_id: str | None = None,
    ) -> RecommendationRun:
        """
        Run the whole pipeline for one user. Never raises for pipeline
        failures (the run is marked failed instead); RunInProgressError is
        raised before anything is written.
        """
        started = time.perf_counter()
        run = await self.runs.create_run(user.id, media_type, run_type, channel_id, clear_policy)
        self._in_flight.add(run.id)
        try:
            run = await self.runs.transition(run.id, RunStatus.RUNNING)
            return await self._pipeline(run, user, media_type, watched, started, job_id)
        except _Cancelled:
            log.info("run %s cancelled", run.id)
            return await self._close(run, RunStatus.CANCELLED, "cancelled by request", started)
        except DomainError as e:
            log.warning("run %s failed user=%s: %s", run.id, user.id, e)
            return await self._close(run, RunStatus.FAILED, f"{e.code}: {e}", started)
        except Exception as e:
            log.exception("run %s crashed user=%s", run.id, user.id)
            return await self._close(run, RunStatus.FAILED, f"unexpected error: {e!r}", started)
        finally:
            self._in_flight.discard(run.id)
            self._cancel_requested.discard(run.id)

    async def _pipeline(
        self,
        run: RecommendationRun,
        user: UserRef,
        media_type: MediaType,
        watched: Sequence[WatchedItem] | None,
        started: float,
        job_id: str | None,
    ) -> RecommendationRun:
        cfg = resolve_pipeline_config(media_type, self.pipeline_overrides.get(media_type))
        scoring = cfg.scoring_config()
        scoring.validate()
        model = self.settings.active_model()

        # 1) history
        self._step(job_id, 0)
        if watched is None:
            watched = await to_thread.run_sync(self.watch_history.watched_items, user.id, media_type)
        watched = list(watched)
        disliked: list[str] = []
        if user.dislike_behavior == "exclude":
            disliked = await to_thread.run_sync(self.watch_history.disliked_items, user.id, media_type)
        include_watched = cfg.include_watched if user.include_watched is None else user.include_watched

        # 2) taste profile
        self._step(job_id, 1)
        params = default_params(media_type)
        params.recent_watch_limit = cfg.recent_watch_limit
        profile = await self.taste.ensure_profile(user.id, media_type, watched=watched, params=params)
        self._check_cancel(run.id)

        # 3) retrieve
        self._step(job_id, 2)
        retrieved = await to_thread.run_sync(
            lambda: self.retriever.retrieve(
                profile.embedding,
                media_type,
                model=model,
                watched_ids=[w.item_id for w in watched],
                excluded_ids=disliked,
                limit=cfg.max_candidates,
                include_watched=include_watched,
                max_parental_rating=user.max_parental_rating,
                library_ids=user.library_ids,
            )
        )
        self._check_cancel(run.id)

        # 4) score
        self._step(job_id, 3)
        candidates = [Candidate.from_payload(r.item_id, r.similarity, r.payload) for r in retrieved]
        ctx = ScoringContext(
            media_type=media_type,
            user_rating_mean=user_rating_mean(watched),
            rating_curve=cfg.rating_curve,
        )
        scored = score_candidates(candidates, scoring, ctx)
        self._check_cancel(run.id)

        # 5) select
        self._step(job_id, 4)
        selected, rest = select_diverse(scored, cfg.selected_count, scoring.diversity_weight)
        self._check_cancel(run.id)

        # 6) evidence + persist (no cancellation past this point)
        self._step(job_id, 5)
        evidence = {}
        if selected and watched:
            ids = [c.item_id for c in selected] + [w.item_id for w in watched]
            vecs = await to_thread.run_sync(self.embeddings.get_many, media_type, ids)
            evidence = build_evidence(
                selected, watched, embeddings=vecs, model=model, top_n=self.settings.evidence_top_n
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        done = await self.runs.persist_results(run.id, selected + rest, evidence, duration_ms)
        log.info(
            "run %s completed user=%s media=%s candidates=%d selected=%d in %dms",
            done.id,
            user.id,
            media_type.value,
            done.candidate_count,
            done.selected_count,
            duration_ms,
        )
        return done

    async def _close(
        self, run: RecommendationRun, status: RunStatus, message: str, started: float
    ) -> RecommendationRun:
        duration_ms = int((time.perf_counter() - started) * 1000)
        try:
            return await self.runs.transition(run.id, status, error_message=message, duration_ms=duration_ms)
        except Exception:
            log.exception("could not record %s for run %s", status.value, run.id)
            return run.model_copy(update={"status": status, "error_message": message, "duration_ms": duration_ms})

    # ---- user-initiated ----
    async def regenerate(
        self,
        user_id: str,
        media_type: MediaType,
        policy: ClearPolicy = "keep_history",
    ) -> RecommendationRun:
        """
        Clear prior output (`clear_all`: whole runs, `keep_history`: only
        unselected candidates) and start a fresh run, atomically with the
        active-run guard.
        """
        user = await to_thread.run_sync(self.users.get_user, user_id)
        if user is None:
            raise NotFound(f"user {user_id} not found")
        return await self.run_for_user(
            user, media_type, run_type=RunType.USER_REGENERATE, clear_policy=policy
        )

    # ---- bulk ----
    async def run_for_all_users(
        self,
        media_type: MediaType,
        job_id: str | None = None,
        *,
        run_type: RunType = RunType.SCHEDULED,
    ) -> BulkRunSummary:
        users = [
            u
            for u in await to_thread.run_sync(self.users.eligible_users, media_type)
            if media_type in u.enabled_media
        ]
        if self.progress is not None:
            job_id = self.progress.create(
                f"generate-{media_type.value}-recommendations", job_id=job_id, total_steps=1
            ).job_id
            self.progress.set_step(job_id, 0, f"Generating recommendations for {len(users)} users")
            self.progress.update(job_id, processed=0, total=len(users))

        summary = BulkRunSummary(job_id=job_id)
        limiter = anyio.CapacityLimiter(max(1, self.settings.max_concurrent_runs))
        processed = 0

        async def one(user: UserRef) -> None:
            nonlocal processed
            async with limiter:
                try:
                    run = await self._bulk_run_one(user, media_type, run_type)
                except RunInProgressError:
                    summary.skipped += 1
                    log.info("user=%s already has an active %s run; skipped", user.id, media_type.value)
                except Exception:
                    summary.failed += 1
                    log.exception("bulk run failed for user=%s", user.id)
                else:
                    if run is None:
                        summary.skipped += 1
                    elif run.status == RunStatus.COMPLETED:
                        summary.success += 1
                        summary.total_recommendations += run.selected_count
                    else:
                        summary.failed += 1
                        self._log_job(job_id, "warn", f"{user.username or user.id}: {run.error_message}")
                finally:
                    processed += 1
                    if self.progress is not None and job_id is not None:
                        self.progress.update(job_id, processed=processed, current_item=user.username or user.id)

        async with anyio.create_task_group() as tg:
            for u in users:
                tg.start_soon(one, u)

        log.info(
            "bulk %s: success=%d failed=%d skipped=%d recs=%d",
            media_type.value,
            summary.success,
            summary.failed,
            summary.skipped,
            summary.total_recommendations,
        )
        if self.progress is not None and job_id is not None:
            self.progress.complete(job_id, summary.model_dump())
        return summary

    async def _bulk_run_one(
        self, user: UserRef, media_type: MediaType, run_type: RunType
    ) -> RecommendationRun | None:
        """None when the user has too little history to be worth a run."""
        try:
            watched = await to_thread.run_sync(self.watch_history.watched_items, user.id, media_type)
        except Exception as e:
            log.exception("watch history unavailable for user=%s", user.id)
            return await self._record_failure(user.id, media_type, run_type, f"history_unavailable: {e}")
        if len(watched) < self.settings.min_watched_items:
            return None
        return await self.run_for_user(user, media_type, run_type=run_type, watched=watched)

    async def _record_failure(
        self, user_id: str, media_type: MediaType, run_type: RunType, message: str
    ) -> RecommendationRun:
        run = await self.runs.create_run(user_id, media_type, run_type)
        return await self.runs.transition(run.id, RunStatus.FAILED, error_message=message, duration_ms=0)

    async def clear_and_rebuild_all(self, media_type: MediaType, job_id: str | None = None) -> BulkRunSummary:
        """Admin: drop every finished run for the media type, then regenerate for everyone."""
        await self.runs.clear_all(media_type)
        return await self.run_for_all_users(media_type, job_id, run_type=RunType.ADMIN_REBUILD)

    def _log_job(self, job_id: str | None, level: str, message: str) -> None:
        if self.progress is not None and job_id is not None:
            self.progress.add_log(job_id, level, message)
