"""Typed domain exceptions for API error mapping.

These exceptions provide stronger API contract guarantees than
string-based error message matching. Routes and exception handlers
catch specific exception types to return appropriate HTTP status codes.

Usage:
    # In service layer
    raise NotFoundError("Conversation", slug)

    # In route handler
    try:
        conversation = service.get_by_slug(slug)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class UnauthorizedError(DomainError):
    """Staff endpoint called without the staff API key. Maps to HTTP 401."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Staff API key required for {path}")
        self.path = path


class MergeCycleError(DomainError):
    """Merge chain loops back on itself or exceeds the depth limit."""

    def __init__(self, conversation_id: int, chain: list[int]) -> None:
        super().__init__(
            f"Conversation {conversation_id} has a cyclic merge chain: "
            + " -> ".join(str(c) for c in chain)
        )
        self.conversation_id = conversation_id
        self.chain = chain


class ToolApiError(ValidationError):
    """Tool call rejected before any request was made.

    Attributes:
        code: Machine-readable reason, e.g. 'INVALID_PARAMETER'.
        field: Dotted path of the offending parameter, if any.
    """

    def __init__(self, code: str, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.field = field
