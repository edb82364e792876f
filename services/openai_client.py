"""OpenAI facade: chat completions, transcription and speech synthesis."""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import (
    CHAT_MAX_TOKENS,
    CHAT_MODEL,
    CHAT_TEMPERATURE,
    OPENAI_BASE_URL,
    OPENAI_CLIENT_MAX_INFLIGHT,
    OPENAI_TIMEOUT_S,
    TRANSCRIBE_MODEL,
    TTS_MODEL,
    TTS_VOICE,
    secret,
)
from observability.logger import get_logger
from observability.metrics import get_registry

from .errors import ServiceNotConfigured, UpstreamError, UpstreamFormatError, UpstreamUnavailable

SERVICE_NAME = "OpenAI"

LOGGER = get_logger("newsdeck.services.openai")
REGISTRY = get_registry()


def extract_error_message(response: httpx.Response) -> str:
    message = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_block = payload.get("error")
        if isinstance(error_block, dict):
            message = str(error_block.get("message", ""))
        elif isinstance(error_block, str):
            message = error_block
    if not message:
        message = response.text or ""
    return message.strip()[:500]


class OpenAIClient:
    """Thin synchronous client for the three OpenAI endpoints the app needs.

    Calls are not retried. The connection pool is capped at ``max_inflight``;
    requests beyond that wait for a free connection up to the timeout.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = OPENAI_BASE_URL,
        timeout_s: float = OPENAI_TIMEOUT_S,
        max_inflight: int = OPENAI_CLIENT_MAX_INFLIGHT,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = (secret("OPENAI_API_KEY", "OPENAI_KEY") if api_key is None else api_key).strip()
        self._base_url = base_url.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._client_lock = threading.Lock()
        self._max_inflight = max(1, int(max_inflight))

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _acquire_http_client(self) -> httpx.Client:
        with self._client_lock:
            if self._http_client is None:
                timeout = httpx.Timeout(
                    timeout=self._timeout_s,
                    connect=min(10.0, self._timeout_s),
                )
                self._http_client = httpx.Client(
                    timeout=timeout,
                    limits=httpx.Limits(
                        max_connections=self._max_inflight,
                        max_keepalive_connections=self._max_inflight,
                        keepalive_expiry=60.0,
                    ),
                    http2=True,
                )
            return self._http_client

    def close(self) -> None:
        with self._client_lock:
            if self._http_client is not None and self._owns_client:
                self._http_client.close()
                self._http_client = None

    def _auth_headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise ServiceNotConfigured(SERVICE_NAME, "OPENAI_API_KEY")
        return {"Authorization": f"Bearer {self._api_key}"}

    def _post(self, operation: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = self._auth_headers()
        headers.update(kwargs.pop("headers", None) or {})
        url = f"{self._base_url}{path}"
        http_client = self._acquire_http_client()
        with REGISTRY.timer(f"openai.{operation}").time():
            try:
                response = http_client.post(url, headers=headers, **kwargs)
            except httpx.TimeoutException as exc:
                LOGGER.warning("openai_timeout", extra={"operation": operation, "error": type(exc).__name__})
                raise UpstreamUnavailable(SERVICE_NAME, timeout=True) from exc
            except httpx.HTTPError as exc:
                LOGGER.warning("openai_unreachable", extra={"operation": operation, "error": type(exc).__name__})
                raise UpstreamUnavailable(SERVICE_NAME) from exc
        if not response.is_success:
            detail = extract_error_message(response)
            LOGGER.warning(
                "openai_request_failed",
                extra={"operation": operation, "status_code": response.status_code, "detail": detail},
            )
            raise UpstreamError(SERVICE_NAME, response.status_code, detail=detail)
        LOGGER.info("openai_request_succeeded", extra={"operation": operation})
        return response

    def chat(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        system: Optional[str] = None,
        model: str = CHAT_MODEL,
        temperature: float = CHAT_TEMPERATURE,
        max_tokens: int = CHAT_MAX_TOKENS,
        json_mode: bool = False,
    ) -> str:
        full_messages: List[Dict[str, str]] = []
        if system:
            full_messages.append({"role": "system", "content": system})
        full_messages.extend(dict(message) for message in messages)
        body: Dict[str, Any] = {
            "model": model,
            "messages": full_messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        response = self._post("chat", "/chat/completions", json=body)
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise UpstreamFormatError(SERVICE_NAME, "OpenAI returned an unexpected chat payload") from exc
        text = str(content or "").strip()
        if not text:
            raise UpstreamFormatError(SERVICE_NAME, "OpenAI returned an empty answer")
        return text

    def transcribe(
        self,
        audio: bytes,
        *,
        filename: str = "question.webm",
        content_type: str = "audio/webm",
        model: str = TRANSCRIBE_MODEL,
    ) -> str:
        response = self._post(
            "transcribe",
            "/audio/transcriptions",
            files={"file": (filename, audio, content_type)},
            data={"model": model, "response_format": "json"},
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamFormatError(SERVICE_NAME, "OpenAI returned an unexpected transcription payload") from exc
        if not isinstance(data, dict):
            raise UpstreamFormatError(SERVICE_NAME, "OpenAI returned an unexpected transcription payload")
        return str(data.get("text") or "").strip()

    def synthesize(
        self,
        text: str,
        *,
        voice: str = TTS_VOICE,
        model: str = TTS_MODEL,
        response_format: str = "mp3",
    ) -> bytes:
        response = self._post(
            "speech",
            "/audio/speech",
            json={"model": model, "input": text, "voice": voice, "response_format": response_format},
        )
        audio = response.content
        if not audio:
            raise UpstreamFormatError(SERVICE_NAME, "OpenAI returned empty audio")
        return audio


_default_client: Optional[OpenAIClient] = None
_default_lock = threading.Lock()


def get_default_client() -> OpenAIClient:
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = OpenAIClient()
        return _default_client


__all__ = ["OpenAIClient", "SERVICE_NAME", "extract_error_message", "get_default_client"]
