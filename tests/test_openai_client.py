from __future__ import annotations

import httpx
import pytest

from services.errors import ServiceNotConfigured, UpstreamError, UpstreamFormatError, UpstreamUnavailable
from services.openai_client import OpenAIClient, extract_error_message

BASE_URL = "https://api.openai.test/v1"


def _response(status_code: int, *, path: str = "/chat/completions", json=None, content: bytes = b"", text=None):
    request = httpx.Request("POST", f"{BASE_URL}{path}")
    if json is not None:
        return httpx.Response(status_code, request=request, json=json)
    if text is not None:
        return httpx.Response(status_code, request=request, text=text)
    return httpx.Response(status_code, request=request, content=content)


class DummyClient:
    def __init__(self, responses=None, *, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.requests = []

    def post(self, url, headers=None, **kwargs):
        self.requests.append({"url": url, "headers": headers, **kwargs})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def close(self):
        pass


def _client(dummy: DummyClient, api_key: str = "sk-test") -> OpenAIClient:
    return OpenAIClient(api_key=api_key, base_url=BASE_URL, http_client=dummy)


def test_chat_returns_message_content():
    dummy = DummyClient([_response(200, json={"choices": [{"message": {"content": "  Hello there  "}}]})])

    text = _client(dummy).chat([{"role": "user", "content": "Hi"}], system="Be brief", json_mode=True)

    assert text == "Hello there"
    request = dummy.requests[0]
    assert request["url"] == f"{BASE_URL}/chat/completions"
    assert request["headers"]["Authorization"] == "Bearer sk-test"
    body = request["json"]
    assert body["messages"][0] == {"role": "system", "content": "Be brief"}
    assert body["messages"][1] == {"role": "user", "content": "Hi"}
    assert body["response_format"] == {"type": "json_object"}


def test_chat_non_2xx_raises_without_upstream_body():
    dummy = DummyClient([_response(429, json={"error": {"message": "Rate limit for key sk-test exceeded"}})])

    with pytest.raises(UpstreamError) as excinfo:
        _client(dummy).chat([{"role": "user", "content": "Hi"}])

    error = excinfo.value
    assert error.status_code == 429
    assert error.public_message == "OpenAI returned HTTP 429"
    assert "sk-test" not in str(error)
    assert error.detail.startswith("Rate limit")
    assert len(dummy.requests) == 1


def test_chat_empty_answer_is_format_error():
    dummy = DummyClient([_response(200, json={"choices": [{"message": {"content": ""}}]})])

    with pytest.raises(UpstreamFormatError):
        _client(dummy).chat([{"role": "user", "content": "Hi"}])


def test_chat_malformed_payload_is_format_error():
    dummy = DummyClient([_response(200, json={"unexpected": True})])

    with pytest.raises(UpstreamFormatError):
        _client(dummy).chat([{"role": "user", "content": "Hi"}])


def test_timeout_maps_to_unavailable():
    error = httpx.ReadTimeout("timeout", request=httpx.Request("POST", BASE_URL))
    dummy = DummyClient(error=error)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        _client(dummy).chat([{"role": "user", "content": "Hi"}])
    assert excinfo.value.timeout is True
    assert excinfo.value.public_message == "OpenAI timed out"


def test_connect_error_maps_to_unavailable():
    error = httpx.ConnectError("connection refused", request=httpx.Request("POST", BASE_URL))
    dummy = DummyClient(error=error)

    with pytest.raises(UpstreamUnavailable) as excinfo:
        _client(dummy).synthesize("hello")
    assert excinfo.value.timeout is False


def test_missing_api_key_fails_before_network():
    dummy = DummyClient()
    client = _client(dummy, api_key="")

    assert client.configured is False
    with pytest.raises(ServiceNotConfigured):
        client.transcribe(b"audio")
    assert dummy.requests == []


def test_transcribe_sends_multipart_upload():
    dummy = DummyClient([_response(200, path="/audio/transcriptions", json={"text": " What changed? "})])

    text = _client(dummy).transcribe(b"\x1a\x45", filename="question.ogg", content_type="audio/ogg")

    assert text == "What changed?"
    request = dummy.requests[0]
    assert request["url"] == f"{BASE_URL}/audio/transcriptions"
    assert request["files"]["file"] == ("question.ogg", b"\x1a\x45", "audio/ogg")
    assert request["data"]["model"] == "whisper-1"
    assert "json" not in request


def test_synthesize_returns_audio_bytes():
    dummy = DummyClient([_response(200, path="/audio/speech", content=b"ID3mp3-bytes")])

    audio = _client(dummy).synthesize("Hello", voice="alloy")

    assert audio == b"ID3mp3-bytes"
    body = dummy.requests[0]["json"]
    assert body == {"model": "tts-1", "input": "Hello", "voice": "alloy", "response_format": "mp3"}


def test_synthesize_empty_audio_is_format_error():
    dummy = DummyClient([_response(200, path="/audio/speech", content=b"")])

    with pytest.raises(UpstreamFormatError):
        _client(dummy).synthesize("Hello")


def test_extract_error_message_prefers_json_error():
    assert extract_error_message(_response(400, json={"error": {"message": "bad input"}})) == "bad input"
    assert extract_error_message(_response(502, text="Bad gateway")) == "Bad gateway"
