"""Exceptions raised by upstream service wrappers.

``public_message`` is safe to show to API clients; the upstream response
body and anything derived from credentials only go to the logs.
"""
from __future__ import annotations

from typing import Optional


class ServiceError(RuntimeError):
    """Base class for failures talking to a third-party service."""

    status_code = 502

    def __init__(self, service: str, public_message: str) -> None:
        super().__init__(public_message)
        self.service = service
        self.public_message = public_message


class ServiceNotConfigured(ServiceError):
    """The server-side credential for a service is missing."""

    status_code = 503

    def __init__(self, service: str, setting: str) -> None:
        super().__init__(service, f"{service} is not configured on the server")
        self.setting = setting


class UpstreamUnavailable(ServiceError):
    """The upstream could not be reached or did not answer in time."""

    def __init__(self, service: str, *, timeout: bool = False) -> None:
        reason = "timed out" if timeout else "is unreachable"
        super().__init__(service, f"{service} {reason}")
        self.timeout = timeout


class UpstreamError(ServiceError):
    """The upstream answered with a non-2xx status."""

    def __init__(self, service: str, status_code: int, *, detail: Optional[str] = None) -> None:
        super().__init__(service, f"{service} returned HTTP {status_code}")
        self.status_code = status_code
        self.detail = detail


class UpstreamFormatError(ServiceError):
    """The upstream answered 2xx but the payload was unusable."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(service, message)


__all__ = [
    "ServiceError",
    "ServiceNotConfigured",
    "UpstreamError",
    "UpstreamFormatError",
    "UpstreamUnavailable",
]
