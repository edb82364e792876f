from __future__ import annotations

import json

import pytest

from jobs.runner import JobRunner
from jobs.store import JobStore
from services.carousel import CAPTION_SYSTEM_PROMPT, OUTLINE_SYSTEM_PROMPT, SLIDE_SYSTEM_PROMPT, CarouselPipeline
from services.errors import UpstreamError

OUTLINE = {
    "slides": [
        {"title": "AI agents go mainstream", "points": ["launch", "pricing"]},
        {"title": "What changes for teams", "points": ["workflows"]},
        {"title": "Risks to watch", "points": []},
        {"title": "Takeaway", "points": ["start small"]},
    ]
}


class FakeOpenAI:
    configured = True

    def __init__(self, *, outline=None, fail_on=None):
        self.outline = json.dumps(OUTLINE) if outline is None else outline
        self.fail_on = fail_on
        self.calls = []

    def chat(self, messages, *, system=None, **kwargs):
        self.calls.append({"system": system, "messages": messages, **kwargs})
        if system == self.fail_on:
            raise UpstreamError("OpenAI", 500, detail="internal")
        if system == OUTLINE_SYSTEM_PROMPT:
            return self.outline
        if system == SLIDE_SYSTEM_PROMPT:
            return f"Body {sum(1 for call in self.calls if call['system'] == SLIDE_SYSTEM_PROMPT)}"
        if system == CAPTION_SYSTEM_PROMPT:
            return "New agents everywhere. #AI #LinkedIn"
        raise AssertionError(f"unexpected system prompt: {system}")


@pytest.fixture
def job_store() -> JobStore:
    return JobStore(ttl_seconds=30)


def _run(job_store: JobStore, client: FakeOpenAI, payload: dict, **pipeline_kwargs) -> dict:
    pipeline = CarouselPipeline(client, **pipeline_kwargs)
    runner = JobRunner(job_store, pipeline, workers=1, timeout_s=5)
    try:
        job = runner.submit(payload)
        assert runner.wait(job.id, timeout=5) is True
        return runner.get_job(job.id)
    finally:
        runner.stop()


def test_full_carousel_generation(job_store):
    client = FakeOpenAI()
    snapshot = _run(
        job_store,
        client,
        {"title": "Agents launch", "summary": "A long summary.", "preview_only": False},
        slide_count=3,
    )

    assert snapshot["status"] == "completed"
    assert snapshot["percent"] == 100
    assert snapshot["message"] == "Carousel ready"
    result = snapshot["result"]
    assert [slide["title"] for slide in result["slides"]] == [
        "AI agents go mainstream",
        "What changes for teams",
        "Risks to watch",
    ]
    assert [slide["index"] for slide in result["slides"]] == [1, 2, 3]
    assert result["slides"][0]["body"] == "Body 1"
    assert result["caption"].endswith("#LinkedIn")
    assert result["preview_only"] is False
    assert [step["status"] for step in snapshot["steps"]] == ["succeeded", "succeeded", "succeeded"]

    outline_call = client.calls[0]
    assert outline_call["json_mode"] is True
    assert "Plan exactly 3 slides" in outline_call["messages"][0]["content"]
    assert "Agents launch" in outline_call["messages"][0]["content"]


def test_preview_limits_slides_and_skips_caption(job_store):
    client = FakeOpenAI()
    snapshot = _run(
        job_store,
        client,
        {"title": "Agents launch", "summary": "Summary", "preview_only": True},
        slide_count=6,
        preview_slide_count=2,
    )

    assert snapshot["status"] == "completed"
    assert len(snapshot["result"]["slides"]) == 2
    assert snapshot["result"]["caption"] is None
    assert snapshot["result"]["preview_only"] is True
    steps = {step["name"]: step["status"] for step in snapshot["steps"]}
    assert steps == {"outline": "succeeded", "slides": "succeeded", "caption": "skipped"}
    assert all(call["system"] != CAPTION_SYSTEM_PROMPT for call in client.calls)


def test_outline_in_code_fence_is_accepted(job_store):
    client = FakeOpenAI(outline="Sure!\n```json\n" + json.dumps(OUTLINE) + "\n```")
    snapshot = _run(job_store, client, {"title": "T", "summary": "S"}, slide_count=2)

    assert snapshot["status"] == "completed"
    assert len(snapshot["result"]["slides"]) == 2


def test_unreadable_outline_fails_job(job_store):
    client = FakeOpenAI(outline="I cannot help with that")
    snapshot = _run(job_store, client, {"title": "T", "summary": "S"})

    assert snapshot["status"] == "failed"
    assert snapshot["error"]["stage"] == "outline"
    assert snapshot["error"]["message"] == "Could not read the slide outline from the model"
    assert all(call["system"] != SLIDE_SYSTEM_PROMPT for call in client.calls)


def test_upstream_failure_mid_pipeline_fails_job(job_store):
    client = FakeOpenAI(fail_on=SLIDE_SYSTEM_PROMPT)
    snapshot = _run(job_store, client, {"title": "T", "summary": "S"})

    assert snapshot["status"] == "failed"
    assert snapshot["error"] == {"message": "OpenAI returned HTTP 500", "stage": "slides"}
    assert "result" not in snapshot
    assert snapshot["percent"] < 100


def test_step_names_and_budget():
    pipeline = CarouselPipeline(FakeOpenAI(), slide_count=5, preview_slide_count=9)

    assert list(pipeline.step_names({})) == ["outline", "slides", "caption"]
    assert pipeline.slide_budget({"preview_only": True}) == 5
    assert pipeline.slide_budget({}) == 5
    assert pipeline.should_run("caption", {"preview_only": True}) is False
    assert pipeline.should_run("caption", {}) is True
