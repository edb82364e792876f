"""Voice features: article narration and the ask-by-voice pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from config import TTS_VOICE, TTS_VOICES
from observability.logger import get_logger
from observability.metrics import get_registry

from .errors import ServiceError, ServiceNotConfigured
from .guardrails import clip_article_text
from .openai_client import OpenAIClient, get_default_client

LOGGER = get_logger("newsdeck.services.voice")
REGISTRY = get_registry()
VOICE_REQUESTS = REGISTRY.counter("voice.requests_total")
VOICE_FAILURES = REGISTRY.counter("voice.failures_total")

STAGE_TRANSCRIBE = "transcription"
STAGE_ANSWER = "answer"
STAGE_SYNTHESIZE = "synthesis"

ANSWER_SYSTEM_PROMPT = (
    "You are a friendly assistant answering spoken questions about one AI news article. "
    "Use the article below as your main source. Answer in 2-4 short sentences that "
    "sound natural when read aloud; no lists, no markdown, no URLs."
)

T = TypeVar("T")


class VoiceStageError(RuntimeError):
    """A voice pipeline stage failed; nothing from the call is returned."""

    def __init__(self, stage: str, message: Optional[str] = None, *, status_code: int = 502) -> None:
        self.stage = stage
        self.status_code = status_code
        self.public_message = message or f"Voice chat failed during {stage}"
        super().__init__(self.public_message)


@dataclass(frozen=True)
class ArticleContext:
    title: str
    summary: str = ""


@dataclass(frozen=True)
class VoiceReply:
    question: str
    answer: str
    audio: bytes


def build_narration(title: str, summary: str, quote: Optional[str] = None) -> str:
    parts = []
    if title.strip():
        parts.append(title.strip().rstrip(".") + ".")
    parts.append(clip_article_text(summary))
    if quote and quote.strip():
        parts.append(f"As they put it: “{quote.strip()}”")
    return "\n\n".join(parts)


class VoicePipeline:
    """Strictly sequential transcribe -> answer -> synthesize chain.

    Every call is independent: no conversation memory, no caching and no
    retries. A failing stage aborts the whole call with a single
    :class:`VoiceStageError`.
    """

    def __init__(self, client: Optional[OpenAIClient] = None, *, voice: str = TTS_VOICE) -> None:
        self._client = client
        self._voice = voice

    @property
    def client(self) -> OpenAIClient:
        return self._client or get_default_client()

    def voice_chat(
        self,
        audio: bytes,
        context: ArticleContext,
        *,
        filename: str = "question.webm",
        content_type: str = "audio/webm",
    ) -> VoiceReply:
        VOICE_REQUESTS.inc()
        question = self._stage(
            STAGE_TRANSCRIBE,
            lambda: self.client.transcribe(audio, filename=filename, content_type=content_type),
        )
        if not question:
            VOICE_FAILURES.inc()
            raise VoiceStageError(STAGE_TRANSCRIBE, "No speech was recognised in the recording", status_code=422)

        answer = self._stage(
            STAGE_ANSWER,
            lambda: self.client.chat(
                [
                    {
                        "role": "user",
                        "content": (
                            f"Article title: {context.title}\n"
                            f"Article summary: {clip_article_text(context.summary)}\n\n"
                            f"Question: {question}"
                        ),
                    }
                ],
                system=ANSWER_SYSTEM_PROMPT,
                max_tokens=250,
            ),
        )
        speech = self._stage(STAGE_SYNTHESIZE, lambda: self.client.synthesize(answer, voice=self._voice))
        LOGGER.info(
            "voice_chat_completed",
            extra={"question_chars": len(question), "answer_chars": len(answer), "audio_bytes": len(speech)},
        )
        return VoiceReply(question=question, answer=answer, audio=speech)

    def audio_summary(self, title: str, summary: str, quote: Optional[str] = None) -> bytes:
        if not (summary or "").strip():
            raise ValueError("summary is required")
        return self.speak(build_narration(title or "", summary, quote))

    def speak(self, text: str, voice: Optional[str] = None) -> bytes:
        if not (text or "").strip():
            raise ValueError("text is required")
        chosen = voice or self._voice
        if chosen not in TTS_VOICES:
            raise ValueError(f"unsupported voice: {chosen}")
        return self.client.synthesize(text, voice=chosen)

    def _stage(self, stage: str, call: Callable[[], T]) -> T:
        try:
            return call()
        except ServiceNotConfigured:
            VOICE_FAILURES.inc()
            raise
        except ServiceError as exc:
            VOICE_FAILURES.inc()
            LOGGER.warning("voice_stage_failed", extra={"stage": stage, "error": exc.public_message})
            raise VoiceStageError(stage) from exc


__all__ = [
    "ArticleContext",
    "VoicePipeline",
    "VoiceReply",
    "VoiceStageError",
    "build_narration",
]
