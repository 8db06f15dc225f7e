"""Typed error hierarchy for the QA engine.

Every error the engine surfaces to callers is a ``QaragError`` carrying a
machine-readable ``kind`` and a ``retryable`` flag. Validation exhaustion and
empty project context are *not* errors; they are reported through
``WorkflowResult.outcome``.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_FATAL = "provider_fatal"
    DIMENSION_MISMATCH = "dimension_mismatch"
    EMPTY_DOCUMENT = "empty_document"
    REQUEST_TIMEOUT = "request_timeout"
    PROJECT_NOT_FOUND = "project_not_found"


class QaragError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.PROVIDER_FATAL
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class ProviderUnavailable(QaragError):
    """Every model in the fallback chain failed.

    Attributes:
        tried: ``(model, reason)`` pairs in the order they were attempted.
    """

    kind = ErrorKind.PROVIDER_UNAVAILABLE
    retryable = True

    def __init__(self, message: str, tried: list[tuple[str, str]] | None = None) -> None:
        super().__init__(message)
        self.tried = list(tried or [])


class ProviderFatalError(QaragError):
    """Authentication or malformed request; falling back would not help."""

    kind = ErrorKind.PROVIDER_FATAL
    retryable = False

    def __init__(self, message: str, *, model: str = "", provider: str = "") -> None:
        super().__init__(message)
        self.model = model
        self.provider = provider


class DimensionMismatch(QaragError):
    kind = ErrorKind.DIMENSION_MISMATCH
    retryable = False

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: index expects {expected}, got {actual}."
        )
        self.expected = expected
        self.actual = actual


class EmptyDocumentError(QaragError):
    kind = ErrorKind.EMPTY_DOCUMENT
    retryable = False


class RequestTimeout(QaragError):
    kind = ErrorKind.REQUEST_TIMEOUT
    retryable = True


class ProjectNotFound(QaragError):
    kind = ErrorKind.PROJECT_NOT_FOUND
    retryable = False

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project '{project_id}' does not exist.")
        self.project_id = project_id
