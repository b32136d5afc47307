"""Tests for HTTP execution of stored mailbox tools."""

import json

import httpx
import pytest
from sqlalchemy import select

from helpdesk.db.models import ConversationMessage
from helpdesk.errors import ToolApiError
from helpdesk.orchestrator.tools import build_request_options, build_url, call_tool_api, create_headers
from helpdesk.orchestrator.tools.api_tool import API_ERROR_MESSAGE, SUCCESS_MESSAGE

ORDER_PARAMETERS = [
    {"name": "orderId", "in": "path", "type": "string", "required": True},
    {"name": "expand", "in": "query", "type": "boolean", "required": False},
    {"name": "note", "in": "body", "type": "string", "required": False},
]


def _tool_messages(db, conversation_id):
    return list(
        db.scalars(
            select(ConversationMessage).where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.role == "tool",
            )
        )
    )


class TestRequestBuilding:
    def test_path_values_are_encoded_and_query_appended(self, make_tool):
        tool = make_tool(parameters=ORDER_PARAMETERS)

        url = build_url(tool, {"orderId": "A 1/2", "expand": True})

        assert url == "https://api.example.com/orders/A%201%2F2?expand=true"

    def test_headers_with_bearer_token(self, make_tool):
        tool = make_tool(
            headers={"X-Shop": "acme"},
            authentication_method="bearer_token",
            authentication_token="tok_123",
        )

        headers = create_headers(tool)

        assert headers["Authorization"] == "Bearer tok_123"
        assert headers["X-Shop"] == "acme"
        assert headers["Content-Type"] == "application/json"

    def test_body_only_for_non_get_with_values(self, make_tool):
        post_tool = make_tool(slug="update_order", request_method="POST", parameters=ORDER_PARAMETERS)
        headers = create_headers(post_tool)

        with_note = build_request_options(post_tool, {"orderId": "A1", "note": "rush"}, headers)
        without_note = build_request_options(post_tool, {"orderId": "A1"}, headers)

        assert json.loads(with_note["content"]) == {"note": "rush"}
        assert "content" not in without_note


class TestCallToolApi:
    async def test_success_records_tool_event(self, db_session, make_conversation, make_tool):
        conversation = make_conversation()
        tool = make_tool(authentication_method="bearer_token", authentication_token="tok_123")
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "shipped"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await call_tool_api(
                db_session, conversation, tool, {"orderId": "A1"}, user_id="staff_1", client=client
            )

        assert result == {"data": {"status": "shipped"}, "success": True}
        assert str(seen[0].url) == "https://api.example.com/orders/A1"
        assert seen[0].headers["Authorization"] == "Bearer tok_123"
        [message] = _tool_messages(db_session, conversation.id)
        assert message.body == SUCCESS_MESSAGE
        assert message.user_id == "staff_1"
        assert message.metadata_json["success"] is True
        assert message.metadata_json["parameters"] == {"orderId": "A1"}

    async def test_upstream_error_status(self, db_session, make_conversation, make_tool):
        conversation = make_conversation()
        tool = make_tool()
        transport = httpx.MockTransport(lambda request: httpx.Response(404, text="no such order"))

        async with httpx.AsyncClient(transport=transport) as client:
            result = await call_tool_api(db_session, conversation, tool, {"orderId": "A1"}, client=client)

        assert result == {"success": False}
        [message] = _tool_messages(db_session, conversation.id)
        assert message.body == API_ERROR_MESSAGE
        assert message.metadata_json["success"] is False
        assert message.metadata_json["result"] == {
            "status": 404,
            "statusText": "Not Found",
            "body": "no such order",
        }

    async def test_network_failure(self, db_session, make_conversation, make_tool):
        conversation = make_conversation()
        tool = make_tool()

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await call_tool_api(db_session, conversation, tool, {"orderId": "A1"}, client=client)

        assert result == {"success": False, "message": API_ERROR_MESSAGE}
        [message] = _tool_messages(db_session, conversation.id)
        assert message.metadata_json["result"] == "connection refused"

    async def test_network_failure_hides_token_and_customer_email(
        self, db_session, make_conversation, make_tool
    ):
        conversation = make_conversation()
        tool = make_tool(
            url="https://api.example.com/orders",
            parameters=[{"name": "email", "in": "query", "type": "string", "required": True}],
            authentication_method="bearer_token",
            authentication_token="tok_live_42",
        )

        def handler(request):
            raise httpx.ConnectError(
                f"refused {request.url} with token tok_live_42", request=request
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await call_tool_api(
                db_session, conversation, tool, {"email": "jane@example.com"}, client=client
            )

        [message] = _tool_messages(db_session, conversation.id)
        error = message.metadata_json["result"]
        assert error.startswith("refused https://api.example.com/orders?email=j***")
        assert error.endswith("with token ***REDACTED***")
        assert "jane" not in error
        assert "tok_live_42" not in error

    async def test_invalid_parameters_make_no_request(self, db_session, make_conversation, make_tool):
        conversation = make_conversation()
        tool = make_tool()
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ToolApiError) as exc_info:
                await call_tool_api(db_session, conversation, tool, {}, client=client)

        assert exc_info.value.field == "orderId"
        assert seen == []
        assert _tool_messages(db_session, conversation.id) == []
