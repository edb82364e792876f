"""Pass-through clients for the news search APIs and the sheet export."""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from config import (
    DEFAULT_NEWS_LANGUAGE,
    DEFAULT_NEWS_PAGE_SIZE,
    DEFAULT_NEWS_QUERY,
    NEWSAPI_URL,
    NEWSDATA_URL,
    PROXY_TIMEOUT_S,
    SHEET_DEFAULT_GID,
    SHEET_ID,
    secret,
)
from observability.logger import get_logger
from observability.metrics import get_registry

from .errors import ServiceNotConfigured, UpstreamUnavailable

LOGGER = get_logger("newsdeck.services.proxies")
REGISTRY = get_registry()

_GID_RE = re.compile(r"^\d{1,12}$")
_LANGUAGE_RE = re.compile(r"^[a-z]{2}(,[a-z]{2}){0,4}$")
MAX_QUERY_CHARS = 200


@dataclass(frozen=True)
class ProxyResponse:
    """Upstream answer relayed to the caller as-is."""

    status_code: int
    body: bytes
    content_type: str


class ProxyValidationError(ValueError):
    """Query parameters the upstream would reject anyway."""


def normalize_query(raw: Optional[str]) -> str:
    query = (raw or "").strip() or DEFAULT_NEWS_QUERY
    if len(query) > MAX_QUERY_CHARS:
        raise ProxyValidationError(f"q must be at most {MAX_QUERY_CHARS} characters")
    return query


def normalize_page_size(raw: Optional[str]) -> int:
    if raw is None or not str(raw).strip():
        return DEFAULT_NEWS_PAGE_SIZE
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ProxyValidationError("pageSize must be an integer") from exc
    if not 1 <= value <= 100:
        raise ProxyValidationError("pageSize must be between 1 and 100")
    return value


def normalize_language(raw: Optional[str]) -> str:
    language = (raw or "").strip().lower() or DEFAULT_NEWS_LANGUAGE
    if not _LANGUAGE_RE.match(language):
        raise ProxyValidationError("language must be a two-letter code")
    return language


def normalize_gid(raw: Optional[str]) -> str:
    gid = (raw or "").strip() or SHEET_DEFAULT_GID
    if not _GID_RE.match(gid):
        raise ProxyValidationError("gid must be numeric")
    return gid


class UpstreamProxy:
    """Forwards requests to fixed third-party endpoints with server-held keys.

    Credentials travel in request headers so they never end up in URLs or
    logs. Status code and body come back unchanged; only transport failures
    are turned into :class:`UpstreamUnavailable`.
    """

    def __init__(
        self,
        *,
        newsapi_key: Optional[str] = None,
        newsdata_key: Optional[str] = None,
        sheet_id: str = SHEET_ID,
        timeout_s: float = PROXY_TIMEOUT_S,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._newsapi_key = (secret("NEWSAPI_KEY") if newsapi_key is None else newsapi_key).strip()
        self._newsdata_key = (secret("NEWSDATA_KEY") if newsdata_key is None else newsdata_key).strip()
        self._sheet_id = sheet_id
        self._timeout_s = float(timeout_s)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._client_lock = threading.Lock()

    def configured_services(self) -> Dict[str, bool]:
        return {
            "newsapi": bool(self._newsapi_key),
            "newsdata": bool(self._newsdata_key),
            "sheets": bool(self._sheet_id),
        }

    def _acquire_http_client(self) -> httpx.Client:
        with self._client_lock:
            if self._http_client is None:
                self._http_client = httpx.Client(
                    timeout=httpx.Timeout(self._timeout_s, connect=min(5.0, self._timeout_s)),
                    follow_redirects=True,
                )
            return self._http_client

    def close(self) -> None:
        with self._client_lock:
            if self._http_client is not None and self._owns_client:
                self._http_client.close()
                self._http_client = None

    def news_everything(self, query: Optional[str] = None, page_size: Optional[str] = None) -> ProxyResponse:
        if not self._newsapi_key:
            raise ServiceNotConfigured("NewsAPI", "NEWSAPI_KEY")
        params = {
            "q": normalize_query(query),
            "sortBy": "publishedAt",
            "pageSize": str(normalize_page_size(page_size)),
        }
        return self._get("NewsAPI", NEWSAPI_URL, params=params, headers={"X-Api-Key": self._newsapi_key})

    def news_latest(self, query: Optional[str] = None, language: Optional[str] = None) -> ProxyResponse:
        if not self._newsdata_key:
            raise ServiceNotConfigured("NewsData", "NEWSDATA_KEY")
        params = {"q": normalize_query(query), "language": normalize_language(language)}
        return self._get("NewsData", NEWSDATA_URL, params=params, headers={"X-ACCESS-KEY": self._newsdata_key})

    def sheet_csv(self, gid: Optional[str] = None) -> ProxyResponse:
        url = f"https://docs.google.com/spreadsheets/d/{self._sheet_id}/export"
        response = self._get("Google Sheets", url, params={"format": "csv", "gid": normalize_gid(gid)})
        return ProxyResponse(
            status_code=response.status_code,
            body=response.body,
            content_type="text/csv; charset=utf-8" if response.status_code < 400 else response.content_type,
        )

    def _get(
        self,
        service: str,
        url: str,
        *,
        params: Dict[str, str],
        headers: Optional[Dict[str, str]] = None,
    ) -> ProxyResponse:
        http_client = self._acquire_http_client()
        metric = REGISTRY.timer(f"proxy.{service.lower().replace(' ', '_')}")
        with metric.time():
            try:
                response = http_client.get(url, params=params, headers=headers or {})
            except httpx.TimeoutException as exc:
                LOGGER.warning("proxy_timeout", extra={"service": service, "error": type(exc).__name__})
                raise UpstreamUnavailable(service, timeout=True) from exc
            except httpx.HTTPError as exc:
                LOGGER.warning("proxy_unreachable", extra={"service": service, "error": type(exc).__name__})
                raise UpstreamUnavailable(service) from exc
        content_type = response.headers.get("content-type", "application/json")
        log = LOGGER.info if response.is_success else LOGGER.warning
        log("proxy_relayed", extra={"service": service, "status_code": response.status_code})
        return ProxyResponse(status_code=response.status_code, body=response.content, content_type=content_type)


__all__ = [
    "ProxyResponse",
    "ProxyValidationError",
    "UpstreamProxy",
    "normalize_gid",
    "normalize_language",
    "normalize_page_size",
    "normalize_query",
]
