"""Staff API key checks.

Staff endpoints and the staff-only promptInfo annotation on chat answers
require the shared HELPDESK_API_KEY in the X-API-Key header. Without a
configured key, staff endpoints are open and no chat caller is staff.
"""

import hmac
import os

from fastapi import Request

from helpdesk.errors import UnauthorizedError

API_KEY_HEADER = "X-API-Key"


def get_staff_api_key() -> str:
    """Return the configured staff key; empty string means auth disabled."""
    return os.environ.get("HELPDESK_API_KEY", "").strip()


def _matches(request: Request, expected_key: str) -> bool:
    provided_key = request.headers.get(API_KEY_HEADER, "")
    return bool(provided_key) and hmac.compare_digest(provided_key, expected_key)


def is_staff_request(request: Request) -> bool:
    """True when the request carries the configured staff key."""
    expected_key = get_staff_api_key()
    return bool(expected_key) and _matches(request, expected_key)


def require_staff_key(request: Request) -> None:
    """Router dependency for staff endpoints.

    Raises:
        UnauthorizedError: If a key is configured and the request lacks it.
    """
    expected_key = get_staff_api_key()
    if expected_key and not _matches(request, expected_key):
        raise UnauthorizedError(request.url.path)
