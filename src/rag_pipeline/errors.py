"""Error taxonomy for the chat RAG pipeline.

Every failure that can reach a user maps to one of these classes. Each class
carries a stable ``code`` and a fixed ``user_message`` so the HTTP layer never
has to forward a raw provider error string.
"""

from typing import Any


class RAGError(Exception):
    """Base class for all pipeline errors."""

    code = "internal_error"
    user_message = "Something went wrong while answering your question."
    retryable = False

    def __init__(self, message: str | None = None, **details: Any):
        super().__init__(message or self.user_message)
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the public error body."""
        return {
            "error": self.code,
            "message": self.user_message,
            "retryable": self.retryable,
        }


class InputValidationError(RAGError):
    """Request rejected before any side effect (empty message, bad ids)."""

    code = "invalid_request"
    user_message = "The request was invalid."

    def __init__(self, message: str, **details: Any):
        super().__init__(message, **details)
        # Validation messages are written by us, safe to show.
        self.user_message = message


class SessionNotFoundError(InputValidationError):
    """The session id is unknown or belongs to another creator."""

    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__("Conversation not found.", session_id=session_id)
        self.session_id = session_id


class ProviderError(RAGError):
    """A call to an external model provider failed."""

    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message, provider=provider, status_code=status_code)
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Rate limit, timeout or outage that survived the retry budget."""

    code = "provider_unavailable"
    user_message = "The AI service is temporarily unavailable. Please try again in a moment."
    retryable = True


class PermanentProviderError(ProviderError):
    """Malformed response, dimension mismatch or rejected request."""

    code = "provider_error"
    user_message = "The AI service could not process this request."


class BudgetExceededError(RAGError):
    """A creator's daily or monthly spend limit has been reached."""

    code = "budget_exceeded"
    user_message = (
        "This workspace has reached its AI usage limit. "
        "Upgrade the plan or try again when the limit resets."
    )

    def __init__(self, creator_id: str, period: str, limit: float, spent: float):
        super().__init__(
            f"{period} budget exceeded for creator {creator_id}: "
            f"${spent:.4f} spent of ${limit:.2f}",
            creator_id=creator_id,
            period=period,
        )
        self.creator_id = creator_id
        self.period = period
        self.limit = limit
        self.spent = spent

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["period"] = self.period
        return body


class ChunkValidationError(RAGError):
    """Chunker produced output that breaks its own guarantees.

    This is a programming error, never a recoverable condition.
    """

    code = "chunk_validation_failed"
