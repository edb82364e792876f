"""Flask application exposing carousel jobs, voice features and news proxies."""
from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import JOB_STORE_TTL_S, MAX_AUDIO_BYTES
from jobs import JobQueueFull, JobRunner, JobStore
from observability.logger import bind_trace_id, clear_trace_id, get_logger
from observability.metrics import get_registry
from services import (
    ArticleContext,
    CarouselPipeline,
    OpenAIClient,
    ProxyResponse,
    ProxyValidationError,
    ServiceError,
    UpstreamProxy,
    VoicePipeline,
    VoiceStageError,
)

LOGGER = get_logger("newsdeck.api")

AUDIO_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/x-m4a": "m4a",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
}
DEFAULT_AUDIO_MIME = "audio/webm"


class ApiError(Exception):
    """Exception translated into an HTTP error response."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@dataclass
class AppServices:
    """Collaborators shared by the request handlers of one app instance."""

    store: JobStore
    runner: JobRunner
    openai: OpenAIClient
    voice: VoicePipeline
    proxy: UpstreamProxy


def create_app(
    *,
    store: Optional[JobStore] = None,
    runner: Optional[JobRunner] = None,
    openai_client: Optional[OpenAIClient] = None,
    voice: Optional[VoicePipeline] = None,
    proxy: Optional[UpstreamProxy] = None,
) -> Flask:
    openai_client = openai_client or OpenAIClient()
    if runner is not None:
        store = runner.store
    store = store or JobStore(ttl_seconds=JOB_STORE_TTL_S)
    runner = runner or JobRunner(store, CarouselPipeline(openai_client))
    services = AppServices(
        store=store,
        runner=runner,
        openai=openai_client,
        voice=voice or VoicePipeline(openai_client),
        proxy=proxy or UpstreamProxy(),
    )

    app = Flask(__name__)
    if hasattr(app, "json"):
        app.json.ensure_ascii = False
    app.extensions["newsdeck"] = services
    CORS(app, resources={r"/api/*": {"origins": "*"}}, send_wildcard=True)

    @app.before_request
    def _bind_request_trace() -> None:
        trace_id = request.headers.get("X-Trace-Id") or uuid.uuid4().hex
        g.trace_id = trace_id
        bind_trace_id(trace_id)

    @app.after_request
    def _append_trace(response):  # type: ignore[override]
        trace_id = getattr(g, "trace_id", None)
        if trace_id:
            response.headers.setdefault("X-Trace-Id", trace_id)
        return response

    @app.teardown_request
    def _teardown_trace(_exc):  # type: ignore[override]
        clear_trace_id()

    @app.errorhandler(ApiError)
    def _handle_api_error(exc: ApiError):  # type: ignore[override]
        LOGGER.warning("api_error", extra={"error": exc.message, "code": exc.status_code})
        return _error_response(exc.message, exc.status_code)

    @app.errorhandler(ProxyValidationError)
    def _handle_proxy_validation(exc: ProxyValidationError):  # type: ignore[override]
        return _error_response(str(exc), 400)

    @app.errorhandler(JobQueueFull)
    def _handle_queue_full(exc: JobQueueFull):  # type: ignore[override]
        LOGGER.warning("job_queue_full", extra={"error": str(exc)})
        return _error_response("Too many carousels are being generated, try again shortly", 503)

    @app.errorhandler(VoiceStageError)
    def _handle_voice_error(exc: VoiceStageError):  # type: ignore[override]
        return _error_response(exc.public_message, exc.status_code, stage=exc.stage)

    @app.errorhandler(ServiceError)
    def _handle_service_error(exc: ServiceError):  # type: ignore[override]
        status_code = exc.status_code if 400 <= int(exc.status_code) < 600 else 502
        LOGGER.warning(
            "upstream_error",
            extra={"service": exc.service, "code": status_code, "error_type": type(exc).__name__},
        )
        return _error_response(exc.public_message, status_code)

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc: HTTPException):  # type: ignore[override]
        return _error_response(exc.description or exc.name, exc.code or 500)

    @app.errorhandler(Exception)
    def _handle_generic_error(exc: Exception):  # type: ignore[override]
        LOGGER.exception("unhandled_error")
        return _error_response("Internal server error", 500)

    @app.post("/api/carousel")
    def start_carousel():
        payload = _require_json(request)
        title = _require_text(payload, "title")
        summary = _require_text(payload, "summary")
        task_payload = {
            "title": title,
            "summary": summary,
            "preview_only": _coerce_bool(payload.get("preview_only")),
        }
        job = services.runner.submit(task_payload, trace_id=getattr(g, "trace_id", None))
        return jsonify({"job_id": job.id, "status": "queued"}), 202

    @app.get("/api/carousel/<job_id>")
    def carousel_status(job_id: str):
        snapshot = services.runner.get_job(job_id)
        if not snapshot:
            raise ApiError("Job not found", status_code=404)
        return jsonify(_format_status(snapshot))

    @app.post("/api/carousel/<job_id>/cancel")
    def cancel_carousel(job_id: str):
        snapshot = services.runner.cancel(job_id)
        if not snapshot:
            raise ApiError("Job not found", status_code=404)
        if snapshot.get("status") in {"completed", "failed"}:
            raise ApiError("Job has already finished", status_code=409)
        return jsonify(_format_status(snapshot)), 202

    @app.post("/api/audio-summary")
    def audio_summary():
        payload = _require_json(request)
        summary = _require_text(payload, "summary")
        title = _optional_text(payload, "title")
        quote = _optional_text(payload, "quote")
        try:
            audio = services.voice.audio_summary(title, summary, quote or None)
        except ValueError as exc:
            raise ApiError(str(exc)) from exc
        return Response(audio, mimetype="audio/mpeg")

    @app.post("/api/tts")
    def text_to_speech():
        payload = _require_json(request)
        text = _require_text(payload, "text")
        try:
            audio = services.voice.speak(text, _optional_text(payload, "voice") or None)
        except ValueError as exc:
            raise ApiError(str(exc)) from exc
        return Response(audio, mimetype="audio/mpeg")

    @app.post("/api/voice-chat")
    def voice_chat():
        payload = _require_json(request)
        audio, mime_type = _decode_audio(payload.get("audio"), payload.get("mime_type"))
        context = ArticleContext(
            title=_optional_text(payload, "title"),
            summary=_optional_text(payload, "summary"),
        )
        extension = AUDIO_EXTENSIONS.get(mime_type, "webm")
        reply = services.voice.voice_chat(
            audio,
            context,
            filename=f"question.{extension}",
            content_type=mime_type,
        )
        return jsonify(
            {
                "question": reply.question,
                "answer": reply.answer,
                "audio": base64.b64encode(reply.audio).decode("ascii"),
            }
        )

    @app.get("/api/news")
    def news_everything():
        return _relay(services.proxy.news_everything(request.args.get("q"), request.args.get("pageSize")))

    @app.get("/api/newsdata")
    def news_latest():
        return _relay(services.proxy.news_latest(request.args.get("q"), request.args.get("language")))

    @app.get("/api/sheets")
    def sheet_export():
        return _relay(services.proxy.sheet_csv(request.args.get("gid")))

    @app.get("/api/health")
    def health():
        configured = {"openai": services.openai.configured, **services.proxy.configured_services()}
        return jsonify(
            {
                "ok": True,
                "services": configured,
                "jobs": services.store.counts(),
                "queue": {
                    "pending": services.runner.pending(),
                    "timeout_s": services.runner.timeout_s(),
                },
                "metrics": get_registry().snapshot(),
            }
        )

    return app


def _error_response(message: str, status_code: int, **extra: Any) -> Tuple[Response, int]:
    body: Dict[str, Any] = {
        "message": message,
        "code": status_code,
        "trace_id": getattr(g, "trace_id", None),
    }
    body.update(extra)
    return jsonify({"error": body}), status_code


def _relay(upstream: ProxyResponse) -> Response:
    return Response(upstream.body, status=upstream.status_code, content_type=upstream.content_type)


def _format_status(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "job_id": snapshot.get("job_id"),
        "status": snapshot.get("status"),
        "percent": snapshot.get("percent", 0),
        "message": snapshot.get("message"),
        "stage": snapshot.get("stage"),
        "steps": snapshot.get("steps"),
    }
    result = snapshot.get("result")
    if isinstance(result, dict):
        payload["slides"] = result.get("slides") or []
        payload["caption"] = result.get("caption")
        payload["preview_only"] = bool(result.get("preview_only"))
    error = snapshot.get("error")
    if isinstance(error, dict):
        payload["error"] = error.get("message")
        payload["error_stage"] = error.get("stage")
    return payload


def _require_json(req) -> Dict[str, Any]:
    data = req.get_json(force=True, silent=True)
    if data is None:
        raise ApiError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ApiError("Request body must be a JSON object")
    return data


def _require_text(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ApiError(f"Field '{field}' is required")
    return value.strip()


def _optional_text(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ApiError(f"Field '{field}' must be a string")
    return value.strip()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _decode_audio(raw_audio: Any, raw_mime: Any) -> Tuple[bytes, str]:
    if not isinstance(raw_audio, str) or not raw_audio.strip():
        raise ApiError("Field 'audio' is required")
    encoded = raw_audio.strip()
    mime_type = str(raw_mime or "").split(";", 1)[0].strip().lower() or DEFAULT_AUDIO_MIME
    # data:audio/webm;codecs=opus;base64,....
    if encoded.startswith("data:"):
        header, _, encoded = encoded.partition(",")
        mime_type = header[5:].split(";", 1)[0].strip().lower() or mime_type
    try:
        audio = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ApiError("Field 'audio' must be base64-encoded") from exc
    if not audio:
        raise ApiError("Field 'audio' is empty")
    if len(audio) > MAX_AUDIO_BYTES:
        raise ApiError("Recording is too large", status_code=413)
    return audio, mime_type


app = create_app()
