"""Service layer: upstream clients and the pipelines built on them."""

from .errors import (  # noqa: F401
    ServiceError,
    ServiceNotConfigured,
    UpstreamError,
    UpstreamFormatError,
    UpstreamUnavailable,
)
from .openai_client import OpenAIClient, get_default_client  # noqa: F401
from .guardrails import OutlineResult, parse_outline  # noqa: F401
from .carousel import CarouselPipeline  # noqa: F401
from .voice import ArticleContext, VoicePipeline, VoiceReply, VoiceStageError  # noqa: F401
from .proxies import ProxyResponse, ProxyValidationError, UpstreamProxy  # noqa: F401

__all__ = [
    "ArticleContext",
    "CarouselPipeline",
    "OpenAIClient",
    "OutlineResult",
    "ProxyResponse",
    "ProxyValidationError",
    "ServiceError",
    "ServiceNotConfigured",
    "UpstreamError",
    "UpstreamFormatError",
    "UpstreamProxy",
    "UpstreamUnavailable",
    "VoicePipeline",
    "VoiceReply",
    "VoiceStageError",
    "get_default_client",
    "parse_outline",
]
