"""Error taxonomy for Conduit.

Every error raised by this package derives from :class:`ConduitError` and
carries a category plus a retryability flag.  The flag drives both the
transport backoff in :mod:`conduit.llm.client` and the
``RetryCondition.RETRYABLE_ERRORS`` policy of the tool executor.
"""

from __future__ import annotations

import enum


class ErrorCategory(enum.Enum):
    PROVIDER = "provider"
    GENERATION = "generation"
    NETWORK = "network"
    RESOURCE = "resource"
    INPUT = "input"


class ConduitError(Exception):
    """Base class for all Conduit errors."""

    category: ErrorCategory = ErrorCategory.GENERATION

    @property
    def is_retryable(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class ProviderError(ConduitError):
    category = ErrorCategory.PROVIDER


class ProviderUnavailableError(ProviderError):
    pass


class ModelNotFoundError(ProviderError):
    def __init__(self, model: str, message: str = "") -> None:
        self.model = model
        super().__init__(message or f"Model not found: {model}")


class IncompatibleModelError(ProviderError):
    pass


class AuthenticationError(ProviderError):
    pass


class BillingError(ProviderError):
    pass


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GenerationError(ConduitError):
    category = ErrorCategory.GENERATION


class GenerationFailedError(GenerationError):
    def __init__(self, message: str, underlying: BaseException | None = None) -> None:
        self.underlying = underlying
        super().__init__(message)


class TokenLimitExceededError(GenerationError):
    pass


class ContentFilteredError(GenerationError):
    pass


class GenerationCancelledError(GenerationError):
    def __init__(self, message: str = "Generation cancelled") -> None:
        super().__init__(message)


class GenerationTimeoutError(GenerationError):
    @property
    def is_retryable(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

class NetworkError(ConduitError):
    category = ErrorCategory.NETWORK

    @property
    def is_retryable(self) -> bool:
        return True


class ServerError(NetworkError):
    """Non-2xx response, or an error event inside an otherwise healthy stream.

    A ``status_code`` of 0 marks a stream-level error event.
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Server error {status_code}: {message}")

    @property
    def is_retryable(self) -> bool:
        return self.status_code == 0 or self.status_code >= 500


class RateLimitError(NetworkError):
    def __init__(self, message: str = "Rate limited", retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------

class ResourceError(ConduitError):
    """Memory, disk, download or file failure.  ``kind`` names which."""

    category = ErrorCategory.RESOURCE

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(f"{kind}: {message}")


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

class InvalidInputError(ConduitError):
    category = ErrorCategory.INPUT


class UnsupportedFormatError(InvalidInputError):
    pass


# ---------------------------------------------------------------------------
# HTTP status mapping
# ---------------------------------------------------------------------------

def map_status_error(
    status_code: int,
    message: str,
    retry_after: float | None = None,
    model: str = "",
) -> ConduitError:
    """Translate a non-2xx HTTP status into the error taxonomy."""
    if status_code in (401, 403):
        return AuthenticationError(f"HTTP {status_code}: {message}")
    if status_code == 402:
        return BillingError(f"HTTP {status_code}: {message}")
    if status_code == 404:
        return ModelNotFoundError(model, f"HTTP 404: {message}")
    if status_code == 408:
        return GenerationTimeoutError(f"HTTP 408: {message}")
    if status_code == 413:
        return TokenLimitExceededError(f"HTTP 413: {message}")
    if status_code == 429:
        return RateLimitError(f"HTTP 429: {message}", retry_after=retry_after)
    if status_code >= 500:
        return ServerError(status_code, message)
    return InvalidInputError(f"HTTP {status_code}: {message}")
