from __future__ import annotations

import pytest

from jobs.models import InvalidTransition, Job, JobStatus, JobStep, JobStepStatus
from jobs.store import JobStore


@pytest.fixture
def job_store() -> JobStore:
    return JobStore(ttl_seconds=30)


def _job(job_id: str = "job-1") -> Job:
    return Job(id=job_id, steps=[JobStep(name="outline"), JobStep(name="slides")])


def test_created_job_is_visible_immediately(job_store):
    job_store.create(_job())

    snapshot = job_store.snapshot("job-1")
    assert snapshot["status"] == "queued"
    assert snapshot["percent"] == 0
    assert "result" not in snapshot
    assert "error" not in snapshot


def test_unknown_job_is_not_found(job_store):
    assert job_store.get("missing") is None
    assert job_store.snapshot("missing") is None
    assert job_store.mark_running("missing") is None


def test_duplicate_job_id_rejected(job_store):
    job_store.create(_job())
    with pytest.raises(ValueError):
        job_store.create(_job())


def test_status_moves_forward_only(job_store):
    job_store.create(_job())
    job_store.mark_running("job-1")
    job_store.set_result("job-1", {"slides": []})

    with pytest.raises(InvalidTransition):
        job_store.mark_running("job-1")
    with pytest.raises(InvalidTransition):
        job_store.set_failed("job-1", "late failure")
    assert job_store.snapshot("job-1")["status"] == "completed"


def test_queued_job_cannot_complete_directly():
    job = _job()
    with pytest.raises(InvalidTransition) as excinfo:
        job.mark_completed({"slides": []})
    assert excinfo.value.current is JobStatus.QUEUED
    assert excinfo.value.target is JobStatus.COMPLETED


def test_failed_job_is_final(job_store):
    job_store.create(_job())
    job_store.mark_running("job-1")
    job_store.set_failed("job-1", {"message": "OpenAI returned HTTP 500", "stage": "outline"})

    with pytest.raises(InvalidTransition):
        job_store.set_result("job-1", {"slides": []})
    snapshot = job_store.snapshot("job-1")
    assert snapshot["status"] == "failed"
    assert snapshot["error"] == {"message": "OpenAI returned HTTP 500", "stage": "outline"}
    assert snapshot["message"] == "OpenAI returned HTTP 500"
    assert "result" not in snapshot


def test_percent_never_decreases(job_store):
    job_store.create(_job())
    job_store.mark_running("job-1")

    job_store.update_progress("job-1", percent=40, message="Writing slides")
    job_store.update_progress("job-1", percent=25, message="Still writing")
    assert job_store.snapshot("job-1")["percent"] == 40
    assert job_store.snapshot("job-1")["message"] == "Still writing"

    job_store.update_progress("job-1", percent=250)
    assert job_store.snapshot("job-1")["percent"] == 100


def test_progress_ignored_outside_running(job_store):
    job_store.create(_job())
    job_store.update_progress("job-1", percent=50, message="too early")

    snapshot = job_store.snapshot("job-1")
    assert snapshot["percent"] == 0
    assert snapshot["message"] == "Queued"


def test_completion_sets_percent_and_result(job_store):
    job_store.create(_job())
    job_store.mark_running("job-1")
    job_store.set_result("job-1", {"slides": [{"index": 1, "title": "Hook", "body": "Text"}]}, message="Carousel ready")

    snapshot = job_store.snapshot("job-1")
    assert snapshot["percent"] == 100
    assert snapshot["message"] == "Carousel ready"
    assert snapshot["result"]["slides"][0]["title"] == "Hook"
    assert snapshot["finished_at"]


def test_update_step_mutates_named_step(job_store):
    job_store.create(_job())
    job_store.update_step("job-1", "slides", lambda step: step.mark_skipped("preview_only"))

    steps = {step["name"]: step for step in job_store.snapshot("job-1")["steps"]}
    assert steps["slides"]["status"] == JobStepStatus.SKIPPED.value
    assert steps["slides"]["error"] == "preview_only"
    assert steps["outline"]["status"] == "pending"


def test_snapshot_is_detached_from_record(job_store):
    job_store.create(_job())
    snapshot = job_store.snapshot("job-1")
    snapshot["status"] = "completed"
    snapshot["steps"].clear()

    assert job_store.snapshot("job-1")["status"] == "queued"
    assert len(job_store.snapshot("job-1")["steps"]) == 2


def test_finished_jobs_expire_but_running_jobs_stay(monkeypatch, job_store):
    clock = {"now": 1000.0}
    monkeypatch.setattr("jobs.store.time.time", lambda: clock["now"])

    job_store.create(_job("done"))
    job_store.create(_job("busy"))
    job_store.mark_running("done")
    job_store.mark_running("busy")
    job_store.set_result("done", {"slides": []})

    clock["now"] += 31
    assert job_store.snapshot("done") is None
    assert job_store.snapshot("busy")["status"] == "running"


def test_cancel_flag_only_for_unfinished_jobs(job_store):
    job_store.create(_job("a"))
    job_store.create(_job("b"))
    job_store.mark_running("b")
    job_store.set_failed("b", "boom")

    job_store.request_cancel("a")
    job_store.request_cancel("b")
    assert job_store.is_cancel_requested("a") is True
    assert job_store.is_cancel_requested("b") is False


def test_discard_only_drops_queued_jobs(job_store):
    job_store.create(_job("queued"))
    job_store.create(_job("running"))
    job_store.mark_running("running")

    job_store.discard("queued")
    job_store.discard("running")
    assert job_store.get("queued") is None
    assert job_store.get("running") is not None


def test_counts_by_status(job_store):
    job_store.create(_job("a"))
    job_store.create(_job("b"))
    job_store.mark_running("b")

    assert job_store.counts() == {"queued": 1, "running": 1, "completed": 0, "failed": 0}


def test_result_in_snapshot_is_a_deep_copy(job_store):
    job_store.create(_job())
    job_store.mark_running("job-1")
    job_store.set_result("job-1", {"slides": [{"index": 1, "title": "Hook", "body": "Text"}]})

    snapshot = job_store.snapshot("job-1")
    snapshot["result"]["slides"][0]["title"] = "Changed"
    snapshot["result"]["slides"].append({"index": 2})

    stored = job_store.snapshot("job-1")["result"]["slides"]
    assert stored == [{"index": 1, "title": "Hook", "body": "Text"}]
