"""Error code registry with E-XXXX format codes.

This module defines the error code system for the helpdesk, organizing
errors into categories:
- E-1xxx: Conversation data errors
- E-2xxx: Validation errors
- E-5xxx: Authentication errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    DATA = "data"  # E-1xxx
    VALIDATION = "validation"  # E-2xxx
    AUTH = "auth"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action the caller should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Data errors (E-1xxx)
    "E-1002": ErrorCode(
        code="E-1002",
        category=ErrorCategory.DATA,
        title="Merge Cycle Detected",
        message_template="Conversation {conversation_id} has a cyclic merge chain.",
        remediation="Unmerge one of the conversations in the chain.",
    ),
    # Validation errors (E-2xxx)
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Invalid Tool Parameter",
        message_template="Tool parameter '{field}' is invalid: {reason}",
        remediation="Correct the parameter value and retry the tool call.",
    ),
    # Authentication errors (E-5xxx)
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.AUTH,
        title="Unauthorized",
        message_template="A valid API key is required for this endpoint.",
        remediation="Send the configured HELPDESK_API_KEY in the X-API-Key header.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Look up error code definition.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all error codes in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
