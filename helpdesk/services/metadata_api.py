"""Client for a mailbox's customer metadata endpoint.

Mailboxes can expose an HTTP endpoint returning a short prompt and
structured metadata about a customer. Requests are GETs signed with
HMAC-SHA256 over the urlencoded query string, using the mailbox secret:

    GET <url>?email=<email>&timestamp=<unix seconds>
    Authorization: Bearer <base64 signature>

The endpoint must answer {"success": true, "user_info": {"prompt": ..., "metadata": {...}}}.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Literal
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from helpdesk.db.models import Mailbox
from helpdesk.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

METADATA_REQUEST_TIMEOUT_SECONDS = 10.0
MAX_PROMPT_LENGTH = 5000


class MetadataAPIError(Exception):
    """The metadata endpoint failed or returned an unexpected payload."""


class UserInfo(BaseModel):
    prompt: str = Field(max_length=MAX_PROMPT_LENGTH)
    metadata: dict[str, Any] = Field(default_factory=dict)


class MetadataResponse(BaseModel):
    success: Literal[True]
    user_info: UserInfo


def timestamp() -> int:
    """Current unix time in seconds."""
    return int(time.time())


def create_hmac_digest(
    secret: str,
    query: dict[str, Any] | None = None,
    json_body: dict[str, Any] | None = None,
) -> bytes:
    """Sign a query dict (urlencoded) or a JSON body with HMAC-SHA256.

    Args:
        secret: Mailbox HMAC secret.
        query: Query parameters, signed in insertion order.
        json_body: JSON payload, signed in compact form.

    Returns:
        Raw digest bytes.
    """
    if query is not None:
        payload = urlencode(query)
    elif json_body is not None:
        payload = json.dumps(json_body, separators=(",", ":"))
    else:
        payload = ""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        field = error["loc"][0] if error["loc"] else "response"
        parts.append(f"'{field}' {error['msg']}")
    return "; ".join(parts)


async def get_metadata(
    url: str,
    hmac_secret: str,
    query: dict[str, Any],
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Call the metadata endpoint and return the validated user_info.

    Raises:
        MetadataAPIError: On HTTP errors, non-JSON bodies or invalid payloads.
    """
    signature = base64.b64encode(create_hmac_digest(hmac_secret, query=query)).decode("ascii")
    request_url = f"{url}?{urlencode(query)}"
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {signature}",
    }

    if client is not None:
        response = await client.get(request_url, headers=headers)
    else:
        async with httpx.AsyncClient(timeout=METADATA_REQUEST_TIMEOUT_SECONDS) as owned:
            response = await owned.get(request_url, headers=headers)

    if response.is_error:
        raise MetadataAPIError(f"HTTP error occurred: {response.status_code}")

    try:
        payload = response.json()
    except ValueError as e:
        raise MetadataAPIError("Endpoint did not return JSON response") from e

    try:
        parsed = MetadataResponse.model_validate(payload)
    except PydanticValidationError as e:
        raise MetadataAPIError(
            f"Invalid format for JSON response: {_format_validation_error(e)}"
        ) from e

    return parsed.user_info.model_dump()


async def fetch_metadata(
    mailbox: Mailbox,
    email: str,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any] | None:
    """Fetch customer metadata for an email, or None.

    Returns None when the mailbox has no metadata endpoint. Endpoint
    failures are logged and also yield None.
    """
    if not mailbox.metadata_endpoint_url or not mailbox.metadata_hmac_secret:
        return None

    try:
        return await get_metadata(
            mailbox.metadata_endpoint_url,
            mailbox.metadata_hmac_secret,
            {"email": email, "timestamp": timestamp()},
            client=client,
        )
    except (MetadataAPIError, httpx.HTTPError) as e:
        logger.warning(
            "metadata_fetch_failed mailbox=%s error=%s",
            mailbox.slug,
            sanitize_error_message(str(e), secrets=(mailbox.metadata_hmac_secret,)),
        )
        return None


def has_metadata_api(mailbox: Mailbox) -> bool:
    return bool(mailbox.metadata_endpoint_url and mailbox.metadata_hmac_secret)
