"""In-memory job registry with retention for finished jobs."""
from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from .models import Job, JobStatus, JobStep


class JobStore:
    """Thread-safe in-memory storage for jobs.

    All reads and writes go through one lock, and :meth:`snapshot` builds a
    plain dict while holding it, so a reader never sees a half-updated
    record. Queued and running jobs are kept for as long as the process
    lives; finished jobs are dropped ``ttl_seconds`` after they finish.
    """

    def __init__(self, *, ttl_seconds: int = 3600) -> None:
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._jobs: Dict[str, Job] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = threading.RLock()

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"job {job.id} already exists")
            self._purge_expired_locked()
            self._jobs[job.id] = job
            return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            self._purge_expired_locked()
            return self._jobs.get(job_id)

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self.get(job_id)
            return job.to_dict() if job else None

    def mark_running(self, job_id: str, message: str = "Starting") -> Optional[Job]:
        return self._mutate(job_id, lambda job: job.mark_running(message))

    def update_progress(
        self,
        job_id: str,
        *,
        percent: Optional[float] = None,
        message: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> Optional[Job]:
        return self._mutate(
            job_id,
            lambda job: job.update_progress(percent=percent, message=message, stage=stage),
        )

    def update_step(self, job_id: str, step_name: str, mutator: Callable[[JobStep], None]) -> Optional[Job]:
        def _apply(job: Job) -> None:
            step = job.step(step_name)
            if step is not None:
                mutator(step)

        return self._mutate(job_id, _apply)

    def set_result(self, job_id: str, result: Dict[str, Any], *, message: str = "Done") -> Optional[Job]:
        job = self._mutate(job_id, lambda job: job.mark_completed(result, message=message))
        self._schedule_expiry(job)
        return job

    def set_failed(self, job_id: str, error: Dict[str, Any] | str) -> Optional[Job]:
        job = self._mutate(job_id, lambda job: job.mark_failed(error))
        self._schedule_expiry(job)
        return job

    def request_cancel(self, job_id: str) -> Optional[Job]:
        def _flag(job: Job) -> None:
            if not job.status.is_terminal:
                job.cancel_requested = True

        return self._mutate(job_id, _flag)

    def discard(self, job_id: str) -> None:
        """Forget a job that was never started, e.g. rejected by admission control."""

        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.status is JobStatus.QUEUED:
                self._jobs.pop(job_id, None)
                self._expiry.pop(job_id, None)

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            return bool(job and job.cancel_requested)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            self._purge_expired_locked()
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts

    def _mutate(self, job_id: str, mutator: Callable[[Job], None]) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None
            mutator(job)
            return job

    def _schedule_expiry(self, job: Optional[Job]) -> None:
        if job is None:
            return
        with self._lock:
            self._expiry[job.id] = time.time() + self._ttl_seconds

    def _purge_expired_locked(self) -> None:
        now = time.time()
        expired = [job_id for job_id, deadline in self._expiry.items() if deadline <= now]
        for job_id in expired:
            self._jobs.pop(job_id, None)
            self._expiry.pop(job_id, None)

    def __len__(self) -> int:  # pragma: no cover - trivial
        with self._lock:
            self._purge_expired_locked()
            return len(self._jobs)
