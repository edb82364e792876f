"""Soft guardrails for model input and structured model output."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import MAX_ARTICLE_CHARS

LOGGER = logging.getLogger("newsdeck.guardrails")

_FENCE_RE = re.compile(r"```(?:json)?\s*(?P<body>.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_SMART_QUOTES = {
    "“": '"',
    "”": '"',
    "«": '"',
    "»": '"',
}
MAX_TITLE_CHARS = 90
MAX_POINTS = 4


def clip_article_text(text: str, limit: int = MAX_ARTICLE_CHARS) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit].rsplit(" ", 1)[0] + "…"


@dataclass(slots=True)
class OutlineSlide:
    title: str
    points: List[str] = field(default_factory=list)


@dataclass(slots=True)
class OutlineResult:
    """Outcome of parsing a slide outline with repair attempts."""

    ok: bool
    slides: List[OutlineSlide]
    attempts: int
    repaired: bool = False
    error: Optional[str] = None


def parse_outline(raw_payload: Any, *, limit: Optional[int] = None) -> OutlineResult:
    """Parse ``{"slides": [{"title", "points"}]}`` out of model output.

    Accepts a bare list of slides as well, tolerates code fences, prose
    around the JSON object and trailing commas.
    """

    text = _normalize_payload(raw_payload)
    if not text:
        return OutlineResult(ok=False, slides=[], attempts=0, error="empty_payload")

    attempts = 0
    for index, candidate in enumerate(_build_candidates(text)):
        attempts += 1
        slides = _try_parse_candidate(candidate)
        if slides:
            if limit is not None:
                slides = slides[: max(1, limit)]
            return OutlineResult(ok=True, slides=slides, attempts=attempts, repaired=index > 0)

    LOGGER.warning("outline_parse_failed", extra={"attempts": attempts, "chars": len(text)})
    return OutlineResult(ok=False, slides=[], attempts=attempts, error="parse_failed")


def _normalize_payload(raw_payload: Any) -> str:
    if isinstance(raw_payload, (dict, list)):
        try:
            return json.dumps(raw_payload, ensure_ascii=False)
        except TypeError:
            return ""
    if not isinstance(raw_payload, str):
        return ""
    return raw_payload.strip().translate(str.maketrans(_SMART_QUOTES))


def _build_candidates(text: str) -> List[str]:
    candidates = [text]
    fence_match = _FENCE_RE.search(text)
    if fence_match:
        body = fence_match.group("body").strip()
        if body and body not in candidates:
            candidates.append(body)
    object_match = _OBJECT_RE.search(candidates[-1])
    if object_match and object_match.group(0) not in candidates:
        candidates.append(object_match.group(0))
    compact = re.sub(r",\s*(\]|\})", r"\1", candidates[-1])
    if compact not in candidates:
        candidates.append(compact)
    return candidates


def _try_parse_candidate(candidate: str) -> List[OutlineSlide]:
    try:
        document = json.loads(candidate)
    except json.JSONDecodeError:
        return []
    if isinstance(document, dict):
        document = document.get("slides")
    if not isinstance(document, list):
        return []
    slides: List[OutlineSlide] = []
    for entry in document:
        slide = _coerce_slide(entry)
        if slide:
            slides.append(slide)
    return slides


def _coerce_slide(entry: Any) -> Optional[OutlineSlide]:
    if isinstance(entry, str):
        title = entry.strip()
        points: List[str] = []
    elif isinstance(entry, dict):
        title = str(entry.get("title") or entry.get("heading") or "").strip()
        raw_points = entry.get("points") or entry.get("bullets") or []
        if isinstance(raw_points, str):
            raw_points = [raw_points]
        points = [str(point).strip() for point in raw_points if str(point).strip()] if isinstance(raw_points, list) else []
    else:
        return None
    if not title:
        return None
    return OutlineSlide(title=title[:MAX_TITLE_CHARS], points=points[:MAX_POINTS])


__all__ = ["OutlineResult", "OutlineSlide", "clip_article_text", "parse_outline"]
