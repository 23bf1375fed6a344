"""Generation gateway: backends, error taxonomy and the tiered service."""

from .backends import (
    GeminiBackend,
    GenerationBackend,
    GenerationRequest,
    ImageAttachment,
    MockGenerationBackend,
    default_mock_responses,
)
from .errors import (
    GenerationError,
    InvalidRequestError,
    QuotaExceededError,
    RateLimitError,
    SchemaParseError,
    TransportError,
)
from .service import GatewayConfig, GenerationGateway, GenerationResult, Tier, TierUsage, build_gateway, parse_structured

__all__ = [
    "GatewayConfig",
    "GeminiBackend",
    "GenerationBackend",
    "GenerationError",
    "GenerationGateway",
    "GenerationRequest",
    "GenerationResult",
    "ImageAttachment",
    "InvalidRequestError",
    "MockGenerationBackend",
    "QuotaExceededError",
    "RateLimitError",
    "SchemaParseError",
    "Tier",
    "TierUsage",
    "TransportError",
    "build_gateway",
    "default_mock_responses",
    "parse_structured",
]
