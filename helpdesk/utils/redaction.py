"""Redaction of tool credentials and customer emails before logging.

Stored tools carry a bearer token and static headers configured by the
mailbox owner, and customer metadata requests are signed with an HMAC bearer
signature. Upstream error text (httpx exceptions quote the request URL) can
echo these, and request URLs carry customer emails as query parameters.
"""

import re
from collections.abc import Iterable, Mapping

REDACTED = "***REDACTED***"

# Headers logged verbatim; every other header value may be a credential
_VISIBLE_HEADERS = frozenset({"accept", "content-type", "content-length", "user-agent"})

_BEARER = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+")
_EMAIL = re.compile(
    r"(?i)\b([a-z0-9._+-])[a-z0-9._+-]*(@|%40)([a-z0-9-]+(?:\.[a-z0-9-]+)*\.[a-z]{2,})\b"
)
# Stored header values shorter than this are too generic to strip from text
_MIN_SECRET_LENGTH = 4


def mask_email(text: str) -> str:
    """Mask the local part of every email address, URL-encoded or not.

    jane@example.com becomes j***@example.com.
    """
    return _EMAIL.sub(lambda m: f"{m.group(1)}***{m.group(2)}{m.group(3)}", text)


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Copy of request headers safe to log; only content headers stay visible."""
    return {
        name: value if name.lower() in _VISIBLE_HEADERS else REDACTED
        for name, value in headers.items()
    }


def tool_secrets(authentication_token: str | None, headers: Mapping[str, str] | None) -> list[str]:
    """Literal values configured on a stored tool that must never be logged."""
    values = [authentication_token, *(headers or {}).values()]
    return [v for v in values if isinstance(v, str) and len(v) >= _MIN_SECRET_LENGTH]


def sanitize_error_message(
    msg: str | None,
    secrets: Iterable[str] = (),
    max_length: int = 2000,
) -> str | None:
    """Make upstream error text safe to log and persist.

    Known secret values and bearer credentials are replaced, customer emails
    are masked and the result is truncated.

    Args:
        msg: Error message (None passes through).
        secrets: Literal values to strip, e.g. from tool_secrets().
        max_length: Maximum length of the result.

    Returns:
        Sanitized message, or None.
    """
    if msg is None:
        return None
    sanitized = msg
    for secret in sorted(secrets, key=len, reverse=True):
        sanitized = sanitized.replace(secret, REDACTED)
    sanitized = _BEARER.sub(f"Bearer {REDACTED}", sanitized)
    sanitized = mask_email(sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[: max_length - 3] + "..."
    return sanitized
