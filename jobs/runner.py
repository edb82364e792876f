"""Background execution engine for generation jobs."""
from __future__ import annotations

import queue
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from config import JOB_MAX_PENDING, JOB_TIMEOUT_S, JOB_WORKERS
from observability.logger import bind_trace_id, clear_trace_id, get_logger, log_stage
from observability.metrics import get_registry

from .models import Job, JobStatus, JobStep
from .store import JobStore

LOGGER = get_logger("newsdeck.jobs.runner")
REGISTRY = get_registry()
QUEUE_GAUGE = REGISTRY.gauge("jobs.queue_length")
ACTIVE_GAUGE = REGISTRY.gauge("jobs.active")
COMPLETED_COUNTER = REGISTRY.counter("jobs.completed_total")
FAILED_COUNTER = REGISTRY.counter("jobs.failed_total")
DURATION_TIMER = REGISTRY.timer("jobs.duration")

_SHUTDOWN = "__shutdown__"


class JobQueueFull(RuntimeError):
    """Raised when too many jobs are already waiting for a worker."""


class JobAborted(Exception):
    """Raised inside a job when it was cancelled or ran past its deadline."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.public_message = message


class Pipeline(Protocol):
    """Fixed sequence of steps executed for each job."""

    stage_weights: Mapping[str, Tuple[float, float]]
    stage_messages: Mapping[str, str]

    def step_names(self, payload: Dict[str, Any]) -> Sequence[str]: ...

    def should_run(self, step_name: str, payload: Dict[str, Any]) -> bool: ...

    def run_step(self, step_name: str, payload: Dict[str, Any], ctx: "StepContext") -> None: ...

    def build_result(self, payload: Dict[str, Any], state: Dict[str, Any]) -> Dict[str, Any]: ...


class StepContext:
    """Handle given to a pipeline step for progress reporting and shared state."""

    def __init__(
        self,
        *,
        job_id: str,
        stage: str,
        state: Dict[str, Any],
        report: Callable[[str, float, Optional[str]], None],
        ensure_active: Callable[[], None],
        trace_id: Optional[str] = None,
    ) -> None:
        self.job_id = job_id
        self.stage = stage
        self.state = state
        self.trace_id = trace_id
        self._report = report
        self._ensure_active = ensure_active

    def report(self, ratio: float, message: Optional[str] = None) -> None:
        self._report(self.stage, ratio, message)

    def ensure_active(self) -> None:
        self._ensure_active()


class JobRunner:
    """Fixed pool of worker threads executing pipeline jobs from one queue."""

    def __init__(
        self,
        store: JobStore,
        pipeline: Pipeline,
        *,
        workers: int = JOB_WORKERS,
        max_pending: int = JOB_MAX_PENDING,
        timeout_s: float = JOB_TIMEOUT_S,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._workers = max(1, int(workers))
        self._max_pending = max(1, int(max_pending))
        self._timeout_s = float(timeout_s)
        self._tasks: "queue.Queue[str]" = queue.Queue()
        self._pending = 0
        self._enqueued: Set[str] = set()
        self._pending_lock = threading.Lock()
        self._events: Dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._start_lock = threading.Lock()
        self._shutdown = False

    @property
    def store(self) -> JobStore:
        return self._store

    def timeout_s(self) -> float:
        return self._timeout_s

    def pending(self) -> int:
        with self._pending_lock:
            return self._pending

    def create(self, payload: Dict[str, Any], *, trace_id: Optional[str] = None) -> Job:
        """Register a queued job and return it without scheduling any work."""

        job_id = uuid.uuid4().hex
        steps = [JobStep(name=name) for name in self._pipeline.step_names(payload)]
        job = Job(id=job_id, payload=dict(payload), steps=steps, trace_id=trace_id)
        self._store.create(job)
        with self._events_lock:
            self._events[job_id] = threading.Event()
        LOGGER.info("job_created", extra={"job_id": job_id})
        return job

    def start(self, job_id: str) -> None:
        """Hand a queued job to the worker pool."""

        job = self._store.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.status is not JobStatus.QUEUED:
            raise ValueError(f"job {job_id} is already {job.status.value}")
        with self._pending_lock:
            if job_id in self._enqueued:
                raise ValueError(f"job {job_id} is already enqueued")
            if self._pending >= self._max_pending:
                admitted = False
            else:
                self._pending += 1
                self._enqueued.add(job_id)
                admitted = True
        if not admitted:
            self._store.discard(job_id)
            with self._events_lock:
                self._events.pop(job_id, None)
            LOGGER.warning("job_rejected", extra={"job_id": job_id, "max_pending": self._max_pending})
            raise JobQueueFull(f"{self._max_pending} jobs are already waiting")
        self._ensure_workers()
        self._tasks.put(job_id)
        QUEUE_GAUGE.set(float(self.pending()))
        LOGGER.info("job_enqueued", extra={"job_id": job_id})

    def submit(self, payload: Dict[str, Any], *, trace_id: Optional[str] = None) -> Job:
        job = self.create(payload, trace_id=trace_id)
        self.start(job.id)
        return job

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._store.snapshot(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        with self._events_lock:
            event = self._events.get(job_id)
        if not event:
            snapshot = self._store.snapshot(job_id)
            return bool(snapshot and snapshot.get("status") in {"completed", "failed"})
        return event.wait(timeout)

    def cancel(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Flag a job for cancellation; it fails at its next checkpoint."""

        job = self._store.request_cancel(job_id)
        if job is None:
            return None
        LOGGER.info("job_cancel_requested", extra={"job_id": job_id})
        return self._store.snapshot(job_id)

    def stop(self, timeout: float = 1.0) -> None:
        self._shutdown = True
        for _ in self._threads:
            self._tasks.put(_SHUTDOWN)
        for thread in self._threads:
            thread.join(timeout=timeout)

    def _ensure_workers(self) -> None:
        with self._start_lock:
            if self._threads:
                return
            for index in range(self._workers):
                thread = threading.Thread(target=self._worker, name=f"job-worker-{index}", daemon=True)
                thread.start()
                self._threads.append(thread)

    def _worker(self) -> None:
        while not self._shutdown:
            job_id = self._tasks.get()
            if job_id == _SHUTDOWN:
                break
            with self._pending_lock:
                self._pending = max(0, self._pending - 1)
            QUEUE_GAUGE.set(float(self.pending()))
            ACTIVE_GAUGE.add(1)
            try:
                with DURATION_TIMER.time():
                    self._run_job(job_id)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("job_crashed", extra={"job_id": job_id, "error": str(exc)})
            finally:
                ACTIVE_GAUGE.add(-1)
                clear_trace_id()
                with self._pending_lock:
                    self._enqueued.discard(job_id)
                with self._events_lock:
                    event = self._events.pop(job_id, None)
                if event:
                    event.set()

    def _run_job(self, job_id: str) -> None:
        job = self._store.mark_running(job_id, message=self._pipeline.stage_messages.get("start", "Starting"))
        if job is None:
            LOGGER.warning("job_missing", extra={"job_id": job_id})
            return
        bind_trace_id(job.trace_id)
        payload = dict(job.payload)
        deadline = time.monotonic() + self._timeout_s
        state: Dict[str, Any] = {}

        def _ensure_active() -> None:
            if self._store.is_cancel_requested(job_id):
                raise JobAborted("cancelled", "Job was cancelled")
            if time.monotonic() >= deadline:
                raise JobAborted("timeout", f"Job exceeded {self._timeout_s:g}s time limit")

        current_step: Optional[str] = None
        try:
            for step_name in self._pipeline.step_names(payload):
                current_step = step_name
                _ensure_active()
                if not self._pipeline.should_run(step_name, payload):
                    self._store.update_step(job_id, step_name, lambda step: step.mark_skipped("preview_only"))
                    log_stage(LOGGER, job_id=job_id, stage=step_name, status="skipped")
                    continue
                self._store.update_step(job_id, step_name, lambda step: step.mark_running())
                self._record_progress(job_id, step_name, 0.0)
                log_stage(LOGGER, job_id=job_id, stage=step_name, status="running")
                ctx = StepContext(
                    job_id=job_id,
                    stage=step_name,
                    state=state,
                    report=lambda stage, ratio, message: self._record_progress(job_id, stage, ratio, message=message),
                    ensure_active=_ensure_active,
                    trace_id=job.trace_id,
                )
                self._pipeline.run_step(step_name, payload, ctx)
                self._store.update_step(job_id, step_name, lambda step: step.mark_succeeded())
                self._record_progress(job_id, step_name, 1.0)
                log_stage(LOGGER, job_id=job_id, stage=step_name, status="succeeded")
            current_step = None
            result = self._pipeline.build_result(payload, state)
        except Exception as exc:  # noqa: BLE001
            self._fail(job_id, current_step, exc)
            return

        self._store.set_result(job_id, result, message=self._pipeline.stage_messages.get("done", "Done"))
        COMPLETED_COUNTER.inc()
        log_stage(LOGGER, job_id=job_id, stage="done", status="completed")

    def _fail(self, job_id: str, step_name: Optional[str], exc: Exception) -> None:
        message = getattr(exc, "public_message", None) or (
            f"Generation failed during {step_name}" if step_name else "Generation failed"
        )
        error: Dict[str, Any] = {"message": message, "stage": step_name}
        if isinstance(exc, JobAborted):
            error["reason"] = exc.reason
        if step_name:
            self._store.update_step(job_id, step_name, lambda step: step.mark_failed(message))
        self._store.set_failed(job_id, error)
        FAILED_COUNTER.inc()
        log_stage(
            LOGGER,
            job_id=job_id,
            stage=step_name or "finalize",
            status="failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def _record_progress(self, job_id: str, stage: str, ratio: float, *, message: Optional[str] = None) -> None:
        stage_key = str(stage or "").strip().lower()
        base, span = self._pipeline.stage_weights.get(stage_key, (0.0, 0.0))
        try:
            normalized = float(ratio)
        except (TypeError, ValueError):
            normalized = 0.0
        normalized = max(0.0, min(1.0, normalized))
        effective_message = message or self._pipeline.stage_messages.get(stage_key) or "Working"
        self._store.update_progress(
            job_id,
            percent=base + normalized * span,
            message=effective_message,
            stage=stage_key,
        )


__all__ = ["JobAborted", "JobQueueFull", "JobRunner", "Pipeline", "StepContext"]
