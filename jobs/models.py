"""Data models describing asynchronous carousel generation jobs."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    """Return a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(ISO_FORMAT) if value else None


class JobStatus(str, Enum):
    """Lifecycle states for a background job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

_ALLOWED_TRANSITIONS: Mapping[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class InvalidTransition(RuntimeError):
    """Raised when a job would move backwards or leave a terminal state."""

    def __init__(self, job_id: str, current: JobStatus, target: JobStatus) -> None:
        super().__init__(f"job {job_id}: {current.value} -> {target.value} is not allowed")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobStepStatus(str, Enum):
    """Lifecycle states for an individual pipeline step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobStep:
    """Progress information for a single pipeline step."""

    name: str
    status: JobStepStatus = JobStepStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def mark_running(self) -> None:
        self.status = JobStepStatus.RUNNING
        self.started_at = self.started_at or utcnow()

    def mark_succeeded(self) -> None:
        self.status = JobStepStatus.SUCCEEDED
        self.finished_at = utcnow()
        self.error = None

    def mark_skipped(self, reason: Optional[str] = None) -> None:
        self.status = JobStepStatus.SKIPPED
        self.error = reason
        self.finished_at = utcnow()

    def mark_failed(self, reason: Optional[str] = None) -> None:
        self.status = JobStepStatus.FAILED
        self.error = reason
        self.finished_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "error": self.error,
        }


@dataclass
class Job:
    """Representation of one carousel generation request.

    ``status`` only ever moves forward: queued -> running -> completed or
    failed. ``percent`` is clamped to 0..100 and never decreases.
    """

    id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    percent: int = 0
    message: str = "Queued"
    stage: Optional[str] = None
    steps: List[JobStep] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    trace_id: Optional[str] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_event_at: datetime = field(default_factory=utcnow)

    def _advance(self, target: JobStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status, target)
        self.status = target
        self.last_event_at = utcnow()

    def step(self, name: str) -> Optional[JobStep]:
        return next((step for step in self.steps if step.name == name), None)

    def mark_running(self, message: str = "Starting") -> None:
        self._advance(JobStatus.RUNNING)
        self.started_at = self.started_at or utcnow()
        self.message = message

    def mark_completed(self, result: Dict[str, Any], *, message: str = "Done") -> None:
        self._advance(JobStatus.COMPLETED)
        self.result = result
        self.percent = 100
        self.stage = "done"
        self.message = message
        self.finished_at = utcnow()

    def mark_failed(self, error: str | Dict[str, Any]) -> None:
        self._advance(JobStatus.FAILED)
        self.error = {"message": error} if isinstance(error, str) else dict(error)
        self.message = str(self.error.get("message") or "Failed")
        self.finished_at = utcnow()

    def update_progress(
        self,
        *,
        percent: Optional[float] = None,
        message: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        if self.status is not JobStatus.RUNNING:
            return
        if percent is not None:
            try:
                value = int(round(float(percent)))
            except (TypeError, ValueError):
                value = self.percent
            self.percent = max(self.percent, max(0, min(100, value)))
        if message:
            self.message = message
        if stage:
            self.stage = stage.strip().lower() or self.stage
        self.last_event_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.id,
            "status": self.status.value,
            "percent": self.percent,
            "message": self.message,
            "stage": self.stage,
            "steps": [step.to_dict() for step in self.steps],
            "trace_id": self.trace_id,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "last_event_at": _iso(self.last_event_at),
        }
        if self.status is JobStatus.COMPLETED and self.result is not None:
            payload["result"] = copy.deepcopy(self.result)
        if self.status is JobStatus.FAILED and self.error is not None:
            payload["error"] = copy.deepcopy(self.error)
        return payload
