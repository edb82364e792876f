"""LinkedIn carousel generation steps executed by the job runner."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from config import CAROUSEL_PREVIEW_SLIDES, CAROUSEL_SLIDES
from jobs.runner import StepContext
from observability.logger import get_logger

from .errors import UpstreamFormatError
from .guardrails import OutlineSlide, clip_article_text, parse_outline
from .openai_client import SERVICE_NAME, OpenAIClient, get_default_client

LOGGER = get_logger("newsdeck.services.carousel")

STEP_OUTLINE = "outline"
STEP_SLIDES = "slides"
STEP_CAPTION = "caption"
CAROUSEL_STEPS = (STEP_OUTLINE, STEP_SLIDES, STEP_CAPTION)

# (start percent, span) for each stage
STAGE_WEIGHTS: Mapping[str, Tuple[float, float]] = {
    STEP_OUTLINE: (5.0, 25.0),
    STEP_SLIDES: (30.0, 55.0),
    STEP_CAPTION: (85.0, 13.0),
    "done": (100.0, 0.0),
}

STAGE_MESSAGES: Mapping[str, str] = {
    "start": "Starting generation",
    STEP_OUTLINE: "Outlining slides",
    STEP_SLIDES: "Writing slides",
    STEP_CAPTION: "Writing LinkedIn caption",
    "done": "Carousel ready",
}

OUTLINE_SYSTEM_PROMPT = (
    "You turn AI news articles into LinkedIn carousels. "
    "Reply with JSON only: {\"slides\": [{\"title\": str, \"points\": [str]}]}. "
    "The first slide is a hook, the last one a takeaway. Titles stay under 8 words."
)
SLIDE_SYSTEM_PROMPT = (
    "You write the text of one LinkedIn carousel slide. "
    "Plain text, at most 40 words, no hashtags, no emojis, no slide numbers."
)
CAPTION_SYSTEM_PROMPT = (
    "You write LinkedIn post captions for carousels about AI news. "
    "2-3 short paragraphs, end with 3-5 relevant hashtags."
)


class CarouselPipeline:
    """outline -> slides -> caption; the caption step is skipped for previews."""

    stage_weights = STAGE_WEIGHTS
    stage_messages = STAGE_MESSAGES

    def __init__(
        self,
        client: Optional[OpenAIClient] = None,
        *,
        slide_count: int = CAROUSEL_SLIDES,
        preview_slide_count: int = CAROUSEL_PREVIEW_SLIDES,
    ) -> None:
        self._client = client
        self._slide_count = max(1, int(slide_count))
        self._preview_slide_count = max(1, min(self._slide_count, int(preview_slide_count)))

    @property
    def client(self) -> OpenAIClient:
        return self._client or get_default_client()

    def step_names(self, payload: Dict[str, Any]) -> Sequence[str]:
        return CAROUSEL_STEPS

    def should_run(self, step_name: str, payload: Dict[str, Any]) -> bool:
        if step_name == STEP_CAPTION and payload.get("preview_only"):
            return False
        return True

    def slide_budget(self, payload: Dict[str, Any]) -> int:
        return self._preview_slide_count if payload.get("preview_only") else self._slide_count

    def run_step(self, step_name: str, payload: Dict[str, Any], ctx: StepContext) -> None:
        if step_name == STEP_OUTLINE:
            self._run_outline(payload, ctx)
        elif step_name == STEP_SLIDES:
            self._run_slides(payload, ctx)
        elif step_name == STEP_CAPTION:
            self._run_caption(payload, ctx)
        else:
            raise ValueError(f"unknown carousel step: {step_name}")

    def build_result(self, payload: Dict[str, Any], state: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": payload.get("title"),
            "preview_only": bool(payload.get("preview_only")),
            "slides": list(state.get("slides") or []),
            "caption": state.get("caption"),
        }

    def _article_block(self, payload: Dict[str, Any]) -> str:
        title = str(payload.get("title") or "").strip()
        summary = clip_article_text(str(payload.get("summary") or ""))
        return f"Title: {title}\n\nSummary:\n{summary}"

    def _run_outline(self, payload: Dict[str, Any], ctx: StepContext) -> None:
        budget = self.slide_budget(payload)
        raw = self.client.chat(
            [
                {
                    "role": "user",
                    "content": f"{self._article_block(payload)}\n\nPlan exactly {budget} slides.",
                }
            ],
            system=OUTLINE_SYSTEM_PROMPT,
            json_mode=True,
        )
        outline = parse_outline(raw, limit=budget)
        if not outline.ok:
            raise UpstreamFormatError(SERVICE_NAME, "Could not read the slide outline from the model")
        if outline.repaired:
            LOGGER.info("outline_repaired", extra={"job_id": ctx.job_id, "attempts": outline.attempts})
        ctx.state["outline"] = outline.slides
        ctx.report(1.0, f"Outlined {len(outline.slides)} slides")

    def _run_slides(self, payload: Dict[str, Any], ctx: StepContext) -> None:
        outline: List[OutlineSlide] = ctx.state.get("outline") or []
        total = len(outline)
        slides: List[Dict[str, Any]] = []
        for index, item in enumerate(outline):
            ctx.ensure_active()
            ctx.report(index / total, f"Writing slide {index + 1} of {total}")
            points = "\n".join(f"- {point}" for point in item.points) or "- (no notes)"
            body = self.client.chat(
                [
                    {
                        "role": "user",
                        "content": (
                            f"{self._article_block(payload)}\n\n"
                            f"Slide {index + 1} of {total}: {item.title}\nNotes:\n{points}"
                        ),
                    }
                ],
                system=SLIDE_SYSTEM_PROMPT,
                max_tokens=160,
            )
            slides.append({"index": index + 1, "title": item.title, "body": body})
        ctx.state["slides"] = slides

    def _run_caption(self, payload: Dict[str, Any], ctx: StepContext) -> None:
        ctx.ensure_active()
        titles = "\n".join(f"{slide['index']}. {slide['title']}" for slide in ctx.state.get("slides") or [])
        ctx.state["caption"] = self.client.chat(
            [
                {
                    "role": "user",
                    "content": f"{self._article_block(payload)}\n\nCarousel slides:\n{titles}",
                }
            ],
            system=CAPTION_SYSTEM_PROMPT,
            max_tokens=300,
        )


__all__ = [
    "CAROUSEL_STEPS",
    "CarouselPipeline",
    "STAGE_MESSAGES",
    "STAGE_WEIGHTS",
]
