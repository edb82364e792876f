"""Job management primitives for asynchronous generation."""

from .models import InvalidTransition, Job, JobStatus, JobStep, JobStepStatus  # noqa: F401
from .store import JobStore  # noqa: F401
from .runner import JobAborted, JobQueueFull, JobRunner, StepContext  # noqa: F401

__all__ = [
    "InvalidTransition",
    "Job",
    "JobAborted",
    "JobQueueFull",
    "JobRunner",
    "JobStatus",
    "JobStep",
    "JobStepStatus",
    "JobStore",
    "StepContext",
]
