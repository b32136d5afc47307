"""HTTP execution of stored mailbox tools.

A stored Tool describes one REST action: URL (with {param} placeholders),
method, static headers, optional bearer token and a parameter list saying
whether each value goes to the path, the query string or the JSON body.

call_tool_api validates parameters before any request is made. Upstream
failures never raise: every attempt that reaches the network is recorded as
a tool message on the conversation and the caller gets a result dict.
"""

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.db.models import Conversation, ParameterLocation, Tool
from helpdesk.orchestrator.tools.parameters import (
    build_parameter_schema,
    validate_parameters,
)
from helpdesk.services.conversation_message_service import create_tool_event
from helpdesk.utils.redaction import (
    mask_email,
    redact_headers,
    sanitize_error_message,
    tool_secrets,
)

logger = logging.getLogger(__name__)

TOOL_REQUEST_TIMEOUT_SECONDS = 30.0
API_ERROR_MESSAGE = "The API returned an error"
SUCCESS_MESSAGE = "Tool executed successfully."

# Same characters encodeURIComponent leaves alone
_PATH_SAFE_CHARS = "-_.!~*'()"


def get_mailbox_tools_for_chat(db: Session) -> list[Tool]:
    return list(
        db.scalars(
            select(Tool)
            .where(Tool.enabled.is_(True), Tool.available_in_chat.is_(True))
            .order_by(Tool.id)
        )
    )


def build_ai_tools(tools: list[Tool], email: str | None) -> dict[str, dict[str, Any]]:
    """Model-facing descriptors for stored tools, keyed by slug.

    Each entry holds 'description' ('<name> - <description>'), 'parameters'
    (a ParameterValidator with the customer email default applied) and
    'customer_email_parameter'.
    """
    return {
        tool.slug: {
            "description": f"{tool.name} - {tool.description}",
            "parameters": build_parameter_schema(tool, use_email_parameter=True, email=email),
            "customer_email_parameter": tool.customer_email_parameter,
        }
        for tool in tools
    }


def create_headers(tool: Tool) -> httpx.Headers:
    headers = httpx.Headers(tool.headers or {})
    if tool.authentication_method == "bearer_token" and tool.authentication_token:
        headers["Authorization"] = f"Bearer {tool.authentication_token}"
    if "Content-Type" not in headers:
        headers["Content-Type"] = "application/json"
    return headers


def build_url(tool: Tool, params: dict[str, Any]) -> str:
    """Substitute path placeholders and append query parameters."""
    url = tool.url
    query: list[tuple[str, Any]] = []

    for param in tool.parameters or []:
        name = param["name"]
        if params.get(name) is None:
            continue
        value = params[name]
        location = param.get("in")
        if location == ParameterLocation.query.value:
            query.append((name, value))
        elif location == ParameterLocation.path.value:
            url = url.replace(f"{{{name}}}", quote(_to_text(value), safe=_PATH_SAFE_CHARS))

    parsed = httpx.URL(url)
    if query:
        parsed = parsed.copy_merge_params(query)
    return str(parsed)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_request_options(
    tool: Tool,
    params: dict[str, Any],
    headers: httpx.Headers,
) -> dict[str, Any]:
    """Keyword arguments for httpx.AsyncClient.request, minus the URL.

    Body parameters are sent as JSON for non-GET methods, and only when at
    least one of them has a value.
    """
    method = tool.request_method.upper()
    options: dict[str, Any] = {"method": method, "headers": headers}

    if method != "GET":
        body = {
            param["name"]: params[param["name"]]
            for param in tool.parameters or []
            if param.get("in") == ParameterLocation.body.value
            and params.get(param["name"]) is not None
        }
        if body:
            options["content"] = json.dumps(body)
    return options


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def call_tool_api(
    db: Session,
    conversation: Conversation,
    tool: Tool,
    params: dict[str, Any],
    user_id: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Execute a stored tool and record the outcome on the conversation.

    Args:
        db: Database session.
        conversation: Conversation the tool runs for.
        tool: Stored tool definition.
        params: Parameters supplied by the model or a staff member.
        user_id: Staff member running the tool, if any.
        client: Optional shared httpx client.

    Returns:
        {'success': True, 'data': ...} on success, otherwise
        {'success': False} with a 'message' for network failures.

    Raises:
        ToolApiError: INVALID_PARAMETER, before any request is made.
    """
    validate_parameters(tool, params)

    headers = create_headers(tool)
    url = build_url(tool, params)
    options = build_request_options(tool, params, headers)

    logger.info(
        "tool_request tool=%s method=%s url=%s headers=%s",
        tool.slug,
        options["method"],
        mask_email(url),
        redact_headers(headers),
    )

    try:
        if client is not None:
            response = await client.request(url=url, **options)
        else:
            async with httpx.AsyncClient(timeout=TOOL_REQUEST_TIMEOUT_SECONDS) as owned:
                response = await owned.request(url=url, **options)
    except httpx.HTTPError as e:
        error = sanitize_error_message(
            str(e) or type(e).__name__,
            secrets=tool_secrets(tool.authentication_token, tool.headers),
        )
        logger.warning("tool_request_failed tool=%s error=%s", tool.slug, error)
        create_tool_event(
            db,
            conversation_id=conversation.id,
            tool=tool,
            error=error,
            parameters=params,
            user_message=API_ERROR_MESSAGE,
            user_id=user_id,
        )
        return {"success": False, "message": API_ERROR_MESSAGE}

    if response.is_error:
        logger.warning(
            "tool_request_failed tool=%s status=%d", tool.slug, response.status_code
        )
        create_tool_event(
            db,
            conversation_id=conversation.id,
            tool=tool,
            error={
                "status": response.status_code,
                "statusText": response.reason_phrase,
                "body": _response_body(response),
            },
            parameters=params,
            user_message=API_ERROR_MESSAGE,
            user_id=user_id,
        )
        return {"success": False}

    data = _response_body(response)
    create_tool_event(
        db,
        conversation_id=conversation.id,
        tool=tool,
        data=data,
        parameters=params,
        user_message=SUCCESS_MESSAGE,
        user_id=user_id,
    )
    logger.info("tool_request_succeeded tool=%s status=%d", tool.slug, response.status_code)
    return {"data": data, "success": True}
