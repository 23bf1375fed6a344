"""Error taxonomy raised by the generation gateway and its backends."""

from __future__ import annotations


class GenerationError(RuntimeError):
    """Base error for generation failures."""

    retryable = False


class TransportError(GenerationError):
    """Network failure, server error or malformed response envelope."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GenerationError):
    """Transient rate limit; retried with jittered backoff."""

    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class QuotaExceededError(GenerationError):
    """Daily quota exhausted for a model; never retried on the same tier."""


class InvalidRequestError(GenerationError):
    """The backend rejected the request itself."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SchemaParseError(GenerationError):
    """A successful response did not parse as the requested schema."""

    def __init__(self, message: str, *, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


__all__ = [
    "GenerationError",
    "InvalidRequestError",
    "QuotaExceededError",
    "RateLimitError",
    "SchemaParseError",
    "TransportError",
]
