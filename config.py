# -*- coding: utf-8 -*-

import os

from dotenv import find_dotenv, load_dotenv


def load_environment(*, override: bool = False) -> bool:
    """Load `.env` from the working directory (or its parents) into os.environ."""

    return load_dotenv(find_dotenv(usecwd=True), override=override)


load_environment()


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default)).strip()


def secret(name: str, *aliases: str) -> str:
    # Секреты читаются при создании клиента и дальше передаются только в заголовках.
    for key in (name,) + aliases:
        value = _env_str(key)
        if value:
            return value
    return ""


OPENAI_BASE_URL = _env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_TIMEOUT_S = max(1.0, _env_float("OPENAI_TIMEOUT_S", 60.0))
OPENAI_CLIENT_MAX_INFLIGHT = max(1, _env_int("OPENAI_CLIENT_MAX_INFLIGHT", 8))

CHAT_MODEL = _env_str("CHAT_MODEL", "gpt-4o-mini") or "gpt-4o-mini"
CHAT_TEMPERATURE = max(0.0, min(2.0, _env_float("CHAT_TEMPERATURE", 0.7)))
CHAT_MAX_TOKENS = max(16, _env_int("CHAT_MAX_TOKENS", 700))
TRANSCRIBE_MODEL = _env_str("TRANSCRIBE_MODEL", "whisper-1") or "whisper-1"
TTS_MODEL = _env_str("TTS_MODEL", "tts-1") or "tts-1"
TTS_VOICE = _env_str("TTS_VOICE", "nova") or "nova"
TTS_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")

PROXY_TIMEOUT_S = max(1.0, _env_float("PROXY_TIMEOUT_S", 15.0))
NEWSAPI_URL = "https://newsapi.org/v2/everything"
NEWSDATA_URL = "https://newsdata.io/api/1/news"
DEFAULT_NEWS_QUERY = "artificial intelligence"
DEFAULT_NEWS_PAGE_SIZE = 10
DEFAULT_NEWS_LANGUAGE = "en"
SHEET_ID = _env_str("SHEET_ID", "11a-_IWhljPJHeKV8vdke-JiLmm_KCq-bedSceKB0kZI")
SHEET_DEFAULT_GID = _env_str("SHEET_GID", "5770604") or "5770604"

JOB_WORKERS = max(1, _env_int("JOB_WORKERS", 4))
JOB_MAX_PENDING = max(1, _env_int("JOB_MAX_PENDING", 32))
JOB_TIMEOUT_S = max(1, _env_int("JOB_TIMEOUT_S", 180))
JOB_STORE_TTL_S = max(JOB_TIMEOUT_S, _env_int("JOB_STORE_TTL_S", 3600))

CAROUSEL_SLIDES = max(1, _env_int("CAROUSEL_SLIDES", 6))
CAROUSEL_PREVIEW_SLIDES = max(1, min(CAROUSEL_SLIDES, _env_int("CAROUSEL_PREVIEW_SLIDES", 2)))

# Ограничение на размер голосового сообщения (после base64-декодирования)
MAX_AUDIO_BYTES = max(1024, _env_int("MAX_AUDIO_BYTES", 10 * 1024 * 1024))
MAX_ARTICLE_CHARS = max(200, _env_int("MAX_ARTICLE_CHARS", 6000))

LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper() or "INFO"
LOG_JSON = _env_bool("LOG_JSON", True)
