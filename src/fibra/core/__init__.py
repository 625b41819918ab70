"""Core primitives shared by every fibra package."""

from fibra.core.errors import (
    DocumentNotFoundError,
    ErrorCategory,
    ErrorContext,
    FibraError,
    IntegrityError,
    InvalidTransitionError,
    NetworkError,
    OperationCancelledError,
    ParseError,
    PortfolioServiceError,
    SourceError,
    TransientError,
    ValidationError,
)
from fibra.core.hashing import compute_hash, content_sha256
from fibra.core.logging import LogContext, configure_logging, get_logger
from fibra.core.periods import period_tag_for, utcnow
from fibra.core.settings import FibraSettings, get_settings

__all__ = [
    "DocumentNotFoundError",
    "ErrorCategory",
    "ErrorContext",
    "FibraError",
    "FibraSettings",
    "IntegrityError",
    "InvalidTransitionError",
    "LogContext",
    "NetworkError",
    "OperationCancelledError",
    "ParseError",
    "PortfolioServiceError",
    "SourceError",
    "TransientError",
    "ValidationError",
    "compute_hash",
    "configure_logging",
    "content_sha256",
    "get_logger",
    "get_settings",
    "period_tag_for",
    "utcnow",
]
