"""Unit tests for helpdesk/errors.

Tests verify:
- Every registered code is well formed and categorized by its prefix
- HelpdeskError.from_code fills message templates
- Domain exceptions carry their context
"""

import pytest

from helpdesk.errors import (
    ERROR_REGISTRY,
    ErrorCategory,
    HelpdeskError,
    MergeCycleError,
    NotFoundError,
    ToolApiError,
    ValidationError,
    format_error,
    get_error,
    get_errors_by_category,
)

_PREFIX_CATEGORIES = {
    "1": ErrorCategory.DATA,
    "2": ErrorCategory.VALIDATION,
    "5": ErrorCategory.AUTH,
}


@pytest.mark.parametrize("code", sorted(ERROR_REGISTRY))
def test_registered_codes_are_consistent(code):
    error = get_error(code)
    assert error.code == code
    assert error.category == _PREFIX_CATEGORIES[code[2]]
    assert error.title and error.remediation


def test_unknown_code():
    assert get_error("E-9999") is None

    error = HelpdeskError.from_code("E-9999")
    assert error.message == "Unknown error: E-9999"


def test_errors_by_category():
    assert [e.code for e in get_errors_by_category(ErrorCategory.AUTH)] == ["E-5002"]


class TestFromCode:
    def test_formats_template(self):
        error = HelpdeskError.from_code(
            "E-2002", field="orderId", reason="Input should be a valid string"
        )

        assert error.code == "E-2002"
        assert error.message == "Tool parameter 'orderId' is invalid: Input should be a valid string"
        assert str(error) == f"E-2002: {error.message}"

    def test_missing_placeholder_keeps_template(self):
        error = HelpdeskError.from_code("E-2002", field="orderId")

        assert error.message == "Tool parameter '{field}' is invalid: {reason}"

    def test_details(self):
        error = HelpdeskError.from_code("E-1002", conversation_id=7, details={"chain": [7, 8, 7]})

        assert error.message == "Conversation 7 has a cyclic merge chain."
        assert error.details == {"chain": [7, 8, 7]}

    def test_format_error(self):
        error = HelpdeskError.from_code("E-5002")

        assert format_error(error) == (
            "E-5002: A valid API key is required for this endpoint.\n"
            "  Action: Send the configured HELPDESK_API_KEY in the X-API-Key header."
        )
        assert format_error(error, include_remediation=False).count("\n") == 0


class TestDomainErrors:
    def test_not_found(self):
        error = NotFoundError("Conversation", "abc")

        assert str(error) == "Conversation 'abc' not found"
        assert error.resource_type == "Conversation"

    def test_merge_cycle(self):
        error = MergeCycleError(1, [1, 2, 1])

        assert str(error) == "Conversation 1 has a cyclic merge chain: 1 -> 2 -> 1"
        assert error.chain == [1, 2, 1]

    def test_tool_api_error_is_validation_error(self):
        error = ToolApiError("INVALID_PARAMETER", "bad", field="orderId")

        assert isinstance(error, ValidationError)
        assert (error.code, error.field) == ("INVALID_PARAMETER", "orderId")
