"""
TaskmailError hierarchy for the search subsystem.

Provides specific, actionable exception types with context preservation
and programmatic error handling support.
"""

from __future__ import annotations

from typing import Any

SENSITIVE_CONTEXT_KEYS = {"query", "text", "api_key"}
REDACTED_VALUE = "[REDACTED]"


def _redact_context(context: dict[str, Any]) -> dict[str, Any]:
    redacted: dict[str, Any] = {}
    for key, value in context.items():
        if isinstance(key, str) and key.lower() in SENSITIVE_CONTEXT_KEYS:
            redacted[key] = REDACTED_VALUE
        else:
            redacted[key] = value
    return redacted


def _pop_duplicate_kwargs(kwargs: dict[str, Any], keys: tuple[str, ...]) -> None:
    for key in keys:
        kwargs.pop(key, None)


class TaskmailError(Exception):
    """
    Base class for all application errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code (e.g., "DIMENSION_MISMATCH")
        context: Additional context dict for debugging
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = dict(context) if context is not None else {}
        if kwargs:
            self.context.update(kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/reporting."""
        safe_context = _redact_context(dict(self.context)) if self.context else {}
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": safe_context,
        }


class ConfigurationError(TaskmailError):
    """Configuration issues: missing/invalid settings."""


class ValidationError(TaskmailError):
    """
    Input validation failures.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        rule: str | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("field", "rule"))
        super().__init__(message, field=field, rule=rule, **kwargs)
        self.field = field
        self.rule = rule


class ProviderError(TaskmailError):
    """
    External embedding provider failures.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retryable: bool = False,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("provider", "retryable"))
        super().__init__(message, provider=provider, retryable=retryable, **kwargs)
        self.provider = provider
        self.retryable = retryable


class RateLimitError(ProviderError):
    """
    Rate limit exceeded for external provider.

    Always retryable - includes retry_after hint if available.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("provider", "retry_after", "retryable"))
        super().__init__(
            message,
            provider=provider,
            retryable=True,
            retry_after=retry_after,
            **kwargs,
        )
        self.retry_after = retry_after


class ProviderUnavailableError(ProviderError):
    """
    Every configured embedding backend failed (primary and fallback).
    """

    def __init__(
        self,
        message: str,
        attempted: list[str] | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("provider", "retryable", "attempted"))
        super().__init__(
            message,
            provider=",".join(attempted or []) or None,
            retryable=False,
            attempted=list(attempted or []),
            **kwargs,
        )
        self.attempted = list(attempted or [])


class EmbeddingError(TaskmailError):
    """
    Embedding operation failures that are not provider outages.
    """


class InvalidInputError(EmbeddingError):
    """Empty or whitespace-only text was passed to the embedder."""

    def __init__(self, message: str = "Cannot embed empty text", **kwargs: Any):
        super().__init__(message, error_code="INVALID_INPUT", **kwargs)


class DimensionMismatchError(EmbeddingError):
    """
    A vector of the wrong length reached the vector store write boundary.
    """

    def __init__(
        self,
        message: str,
        expected: int | None = None,
        actual: int | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("expected", "actual", "error_code"))
        super().__init__(
            message,
            error_code="DIMENSION_MISMATCH",
            expected=expected,
            actual=actual,
            **kwargs,
        )
        self.expected = expected
        self.actual = actual


class EmptyQueryError(ValidationError):
    """The query has no usable tokens after cleaning."""

    def __init__(self, message: str = "Query has no searchable terms", **kwargs):
        _pop_duplicate_kwargs(kwargs, ("field", "rule"))
        super().__init__(message, field="query", rule="non_empty", **kwargs)


class RetrievalError(TaskmailError):
    """
    Search/retrieval operation failures.
    """

    def __init__(
        self,
        message: str,
        query: str | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("query",))
        super().__init__(message, query=query, **kwargs)
        self.query = query


class TransactionError(TaskmailError):
    """
    Transaction operation failures (commit, rollback).
    """

    def __init__(
        self,
        message: str,
        transaction_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("transaction_id",))
        super().__init__(message, transaction_id=transaction_id, **kwargs)
        self.transaction_id = transaction_id
