from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from aperture_core.errors import NotFound

log = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 200

# finished jobs stay readable this long, then get pruned
KEEP_FINISHED = {
    "completed": timedelta(minutes=5),
    "failed": timedelta(minutes=10),
}
MAX_FINISHED_JOBS = 100


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogEntry(BaseModel):
    at: datetime
    level: Literal["info", "warn", "error", "debug"] = "info"
    message: str
    data: dict[str, Any] | None = None


class JobProgress(BaseModel):
    job_id: str
    job_name: str
    status: JobStatus = JobStatus.RUNNING
    current_step: str | None = None
    current_step_index: int = 0
    total_steps: int = 0
    items_processed: int = 0
    items_total: int = 0
    current_item: str | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None

    @property
    def percent(self) -> float:
        if self.items_total <= 0:
            return 100.0 if self.status == JobStatus.COMPLETED else 0.0
        return round(100.0 * self.items_processed / self.items_total, 1)


Listener = Callable[[JobProgress], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobProgressTracker:
    """
    In-process registry of running jobs.

    Every mutation publishes a snapshot (a copy) to the job's subscribers
    and to the global ones. Listener errors are logged, never raised into
    the job. Finished jobs are pruned on the next create/complete/fail once
    they outlive `KEEP_FINISHED` or exceed `max_finished`.
    """

    def __init__(
        self,
        *,
        max_finished: int = MAX_FINISHED_JOBS,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.max_finished = max_finished
        self._clock = clock
        self._jobs: dict[str, JobProgress] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._global: list[Listener] = []
        self._lock = threading.Lock()

    # ---- lifecycle ----
    def create(self, job_name: str, *, job_id: str | None = None, total_steps: int = 0) -> JobProgress:
        job = JobProgress(
            job_id=job_id or str(uuid.uuid4()),
            job_name=job_name,
            total_steps=total_steps,
            started_at=self._clock(),
        )
        with self._lock:
            self._prune()
            self._jobs[job.job_id] = job
        self._append_log(job.job_id, "info", f"started {job_name}")
        return self._publish(job.job_id)

    def set_step(self, job_id: str, index: int, name: str) -> JobProgress:
        with self._lock:
            job = self._get(job_id)
            job.current_step_index = index
            job.current_step = name
        self._append_log(job_id, "info", name)
        return self._publish(job_id)

    def update(
        self,
        job_id: str,
        *,
        processed: int | None = None,
        total: int | None = None,
        current_item: str | None = None,
    ) -> JobProgress:
        with self._lock:
            job = self._get(job_id)
            if processed is not None:
                job.items_processed = processed
            if total is not None:
                job.items_total = total
            if current_item is not None:
                job.current_item = current_item
        return self._publish(job_id)

    def add_log(
        self,
        job_id: str,
        level: Literal["info", "warn", "error", "debug"],
        message: str,
        data: dict[str, Any] | None = None,
    ) -> JobProgress:
        self._append_log(job_id, level, message, data)
        return self._publish(job_id)

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> JobProgress:
        with self._lock:
            job = self._get(job_id)
            job.status = JobStatus.COMPLETED
            job.result = result
            job.completed_at = self._clock()
            job.current_item = None
            self._prune(keep=job_id)
        self._append_log(job_id, "info", "completed")
        return self._publish(job_id)

    def fail(self, job_id: str, error: str) -> JobProgress:
        with self._lock:
            job = self._get(job_id)
            job.status = JobStatus.FAILED
            job.error = error
            job.completed_at = self._clock()
            self._prune(keep=job_id)
        self._append_log(job_id, "error", error)
        return self._publish(job_id)

    def get(self, job_id: str) -> JobProgress | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    # ---- subscriptions ----
    def subscribe(self, job_id: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[job_id].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(job_id, []):
                    self._listeners[job_id].remove(listener)

        return unsubscribe

    def subscribe_all(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._global.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._global:
                    self._global.remove(listener)

        return unsubscribe

    # ---- internals ----
    def _get(self, job_id: str) -> JobProgress:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"job {job_id} not found")
        return job

    def _append_log(self, job_id: str, level: str, message: str, data: dict[str, Any] | None = None) -> None:
        with self._lock:
            job = self._get(job_id)
            job.logs.append(LogEntry(at=self._clock(), level=level, message=message, data=data))
            del job.logs[:-MAX_LOG_ENTRIES]

    def _prune(self, keep: str | None = None) -> None:
        # caller holds the lock
        now = self._clock()
        finished = sorted(
            (j for j in self._jobs.values() if j.completed_at is not None and j.job_id != keep),
            key=lambda j: j.completed_at,
        )
        expired = {j.job_id for j in finished if now - j.completed_at > KEEP_FINISHED[j.status.value]}
        kept = [j for j in finished if j.job_id not in expired]
        room = max(0, self.max_finished - (1 if keep else 0))
        expired.update(j.job_id for j in kept[: max(0, len(kept) - room)])
        for job_id in expired:
            del self._jobs[job_id]
            self._listeners.pop(job_id, None)
        if expired:
            log.debug("pruned %d finished jobs", len(expired))

    def _publish(self, job_id: str) -> JobProgress:
        with self._lock:
            snapshot = self._get(job_id).model_copy(deep=True)
            listeners = list(self._listeners.get(job_id, [])) + list(self._global)
        for fn in listeners:
            try:
                fn(snapshot)
            except Exception:
                log.exception("progress listener failed for job %s", job_id)
        return snapshot
