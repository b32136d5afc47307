"""Error handling framework for the helpdesk.

This package provides:
- Error code registry with E-XXXX format codes
- HelpdeskError application exception and formatting
- Typed domain exceptions mapped to HTTP status codes

Error categories:
- E-1xxx: Conversation data errors
- E-2xxx: Validation errors
- E-5xxx: Authentication errors
"""

from helpdesk.errors.domain import (
    DomainError,
    MergeCycleError,
    NotFoundError,
    ToolApiError,
    UnauthorizedError,
    ValidationError,
)
from helpdesk.errors.formatter import HelpdeskError, format_error
from helpdesk.errors.registry import (
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
    # Formatter
    "HelpdeskError",
    "format_error",
    # Domain
    "DomainError",
    "NotFoundError",
    "ValidationError",
    "MergeCycleError",
    "ToolApiError",
    "UnauthorizedError",
]
