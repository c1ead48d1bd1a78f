"""Tagged result types for external provider calls.

Provider adapters never let a raw SDK exception cross the network boundary.
They return one of three variants and the calling service decides whether to
retry, degrade or raise.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx
import openai
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior

from .errors import PermanentProviderError, TransientProviderError

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


@dataclass(frozen=True)
class ProviderSuccess(Generic[T]):
    value: T


@dataclass(frozen=True)
class TransientFailure:
    """Retryable failure: rate limit, timeout, connection drop, 5xx."""

    reason: str
    status_code: int | None = None


@dataclass(frozen=True)
class PermanentFailure:
    """Non-retryable failure: rejected request or malformed response."""

    reason: str
    status_code: int | None = None


ProviderFailure = TransientFailure | PermanentFailure
ProviderResult = ProviderSuccess[T] | TransientFailure | PermanentFailure


def is_transient_status(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def classify_exception(exc: BaseException) -> ProviderFailure:
    """Map an SDK or transport exception to a failure variant.

    Args:
        exc: Exception raised by an OpenAI, pydantic-ai or httpx call.

    Returns:
        TransientFailure for retryable conditions, PermanentFailure otherwise.
    """
    reason = type(exc).__name__

    if isinstance(exc, TimeoutError):
        return TransientFailure(reason="timeout")
    if isinstance(exc, openai.APIConnectionError):
        # Includes APITimeoutError
        return TransientFailure(reason=reason)
    if isinstance(exc, openai.APIStatusError):
        if is_transient_status(exc.status_code):
            return TransientFailure(reason=reason, status_code=exc.status_code)
        return PermanentFailure(reason=reason, status_code=exc.status_code)
    if isinstance(exc, ModelHTTPError):
        if is_transient_status(exc.status_code):
            return TransientFailure(reason=reason, status_code=exc.status_code)
        return PermanentFailure(reason=reason, status_code=exc.status_code)
    if isinstance(exc, httpx.TransportError):
        return TransientFailure(reason=reason)
    if isinstance(exc, UnexpectedModelBehavior):
        return PermanentFailure(reason=reason)
    return PermanentFailure(reason=reason)


def failure_to_error(
    failure: ProviderFailure, provider: str, operation: str
) -> TransientProviderError | PermanentProviderError:
    """Build the exception a service raises once it gives up on a failure."""
    message = f"{operation} failed: {failure.reason}"
    if isinstance(failure, TransientFailure):
        return TransientProviderError(message, provider=provider, status_code=failure.status_code)
    return PermanentProviderError(message, provider=provider, status_code=failure.status_code)
