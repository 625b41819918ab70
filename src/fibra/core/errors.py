"""
Error types for the fibra back office.

Stages, the reconciler and the portfolio engine raise ``FibraError``
subclasses. The class decides two things the job runner cares about:

    retryable   the job is requeued with ``attempt + 1``; the stage must
                not have touched any record before raising
    terminal    the job goes to the dead-letter queue

::

    FibraError
    ├── TransientError ............. retryable (NETWORK)
    │   ├── NetworkError             connection resets, HTTP 429 / 5xx
    │   └── FetchTimeoutError        deadline exceeded
    ├── SourceError ................ SOURCE
    │   ├── DocumentNotFoundError
    │   └── ParseError               PARSE, retryable when OCR yields nothing
    ├── ValidationError ............ VALIDATION (field, value)
    │   └── PortfolioFileError       upload unreadable as a whole
    ├── StorageError ............... retryable (STORAGE)
    │   └── IntegrityError           terminal
    ├── PipelineError .............. PIPELINE
    │   ├── InvalidTransitionError
    │   └── OperationCancelledError  retryable
    └── PortfolioServiceError ...... "internal error" for callers

Context (stage, job run, document, ticker, user, URL, HTTP status) rides
on the error so the log line and the dead letter agree:

    >>> err = NetworkError("connection reset").with_context(stage="download", http_status=503)
    >>> err.context.http_status, err.retryable
    (503, True)
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"
    SOURCE = "SOURCE"
    PARSE = "PARSE"
    VALIDATION = "VALIDATION"
    PIPELINE = "PIPELINE"
    PORTFOLIO = "PORTFOLIO"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Where an error happened. Unknown keys go to ``metadata``."""

    stage: str | None = None
    job_run_id: str | None = None
    correlation_id: str | None = None
    document_id: str | None = None
    ticker: str | None = None
    user_id: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def update(self, **values: Any) -> None:
        known = {f.name for f in fields(self)} - {"metadata"}
        for key, value in values.items():
            if key in known:
                setattr(self, key, value)
            else:
                self.metadata[key] = value

    def to_dict(self) -> dict[str, Any]:
        """Set fields only, with metadata flattened in."""
        out = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "metadata" and getattr(self, f.name) is not None
        }
        out.update(self.metadata)
        return out


class FibraError(Exception):
    """Base class. Subclasses pick ``default_category`` and ``default_retryable``."""

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = self.default_retryable if retryable is None else retryable
        self.context = context or ErrorContext()
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **values: Any) -> FibraError:
        """Attach context and return self, for ``raise Err(...).with_context(...)``."""
        self.context.update(**values)
        return self

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if context := self.context.to_dict():
            out["context"] = context
        if self.cause is not None:
            out["cause"] = str(self.cause)
        return out

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT
# =============================================================================


class TransientError(FibraError):
    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    pass


class FetchTimeoutError(TransientError):
    """An outbound call exceeded its deadline."""


# =============================================================================
# SOURCES AND INPUT
# =============================================================================


class SourceError(FibraError):
    """A document source or feed returned something unusable."""

    default_category = ErrorCategory.SOURCE


class DocumentNotFoundError(SourceError):
    def __init__(self, document_id: str):
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id
        self.context.document_id = document_id


class ParseError(SourceError):
    default_category = ErrorCategory.PARSE


class ValidationError(FibraError):
    """Bad input. Retrying cannot help; ``field`` and ``value`` say what was wrong."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, value: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        if self.field:
            out["field"] = self.field
        if self.value is not None:
            out["value"] = repr(self.value)
        return out


class PortfolioFileError(ValidationError):
    """An uploaded portfolio file could not be read at all."""


# =============================================================================
# STORAGE AND PIPELINE
# =============================================================================


class StorageError(FibraError):
    default_category = ErrorCategory.STORAGE
    default_retryable = True


class IntegrityError(StorageError):
    """Duplicate key, or stored content that no longer matches its hash."""

    default_retryable = False


class PipelineError(FibraError):
    default_category = ErrorCategory.PIPELINE


class InvalidTransitionError(PipelineError):
    """The document lifecycle forbids ``current -> target``."""

    def __init__(self, document_id: str, current: Any, target: Any):
        self.document_id = document_id
        self.current = current
        self.target = target
        super().__init__(
            f"Document {document_id}: illegal transition "
            f"{getattr(current, 'value', current)} -> {getattr(target, 'value', target)}"
        )
        self.context.document_id = document_id


class OperationCancelledError(PipelineError):
    """The job's cancellation token fired first."""

    default_retryable = True


class PortfolioServiceError(FibraError):
    """What portfolio callers see. The real cause is chained and logged."""

    default_category = ErrorCategory.PORTFOLIO

    def __init__(self, message: str = "internal error", **kwargs: Any):
        super().__init__(message, **kwargs)


def is_retryable(error: BaseException) -> bool:
    """FibraErrors decide for themselves; builtin timeouts and connection errors retry."""
    if isinstance(error, FibraError):
        return error.retryable
    return isinstance(error, (TimeoutError, ConnectionError))


__all__ = [
    "DocumentNotFoundError",
    "ErrorCategory",
    "ErrorContext",
    "FetchTimeoutError",
    "FibraError",
    "IntegrityError",
    "InvalidTransitionError",
    "NetworkError",
    "OperationCancelledError",
    "ParseError",
    "PipelineError",
    "PortfolioFileError",
    "PortfolioServiceError",
    "SourceError",
    "StorageError",
    "TransientError",
    "ValidationError",
    "is_retryable",
]
