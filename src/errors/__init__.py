"""Error handling framework for kbchat.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions raised by the synchronization core
- Error formatting for terminal display

Error categories:
- E-2xxx: Validation errors
- E-3xxx: Resource processing errors
- E-4xxx: Transport errors
- E-5xxx: Authentication errors
"""

from src.errors.domain import (
    DomainError,
    NotAuthenticatedError,
    NotFoundError,
    SendRejectedError,
    ValidationError,
)
from src.errors.formatter import KbChatError, format_error
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Domain
    "DomainError",
    "NotFoundError",
    "NotAuthenticatedError",
    "SendRejectedError",
    "ValidationError",
    # Formatter
    "KbChatError",
    "format_error",
]
