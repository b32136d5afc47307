"""Tests for the built-in chat tools and tool-set assembly."""

import json
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from helpdesk.db.models import ConversationEvent, PlatformCustomer
from helpdesk.orchestrator.tools import (
    FETCH_USER_INFORMATION_TOOL_NAME,
    GUIDE_USER_TOOL_NAME,
    REQUEST_HUMAN_SUPPORT_TOOL_NAME,
    add_client_tools,
    add_read_page_tool,
    build_tools,
)
from helpdesk.orchestrator.tools.builtin import (
    ESCALATION_RESULT,
    METADATA_ERROR,
    NO_PAST_CONVERSATIONS,
    fetch_user_information,
    request_human_support,
)
from helpdesk.services import job_dispatcher


class TestBuildTools:
    def test_anonymous_visitor(self, db_session, mailbox, make_conversation):
        conversation = make_conversation()

        tools = build_tools(db_session, conversation.id, mailbox, None)

        assert list(tools) == ["knowledge_base", "set_user_email", REQUEST_HUMAN_SUPPORT_TOOL_NAME]
        schema = tools[REQUEST_HUMAN_SUPPORT_TOOL_NAME].to_anthropic()["input_schema"]
        assert schema["required"] == ["reason", "email"]

    def test_identified_customer_with_metadata_api(self, db_session, mailbox, make_conversation):
        mailbox.metadata_endpoint_url = "https://crm.example.com/meta"
        mailbox.metadata_hmac_secret = "hlpr_secret"
        conversation = make_conversation(email_from="jane@example.com")

        tools = build_tools(
            db_session, conversation.id, mailbox, "jane@example.com", guide_enabled=True
        )

        assert list(tools) == [
            "knowledge_base",
            GUIDE_USER_TOOL_NAME,
            REQUEST_HUMAN_SUPPORT_TOOL_NAME,
            FETCH_USER_INFORMATION_TOOL_NAME,
        ]
        assert tools[GUIDE_USER_TOOL_NAME].runs_on_server is False
        schema = tools[REQUEST_HUMAN_SUPPORT_TOOL_NAME].to_anthropic()["input_schema"]
        assert schema["required"] == ["reason"]

    def test_mailbox_tools_included(self, db_session, mailbox, make_conversation, make_tool):
        make_tool()
        make_tool(slug="hidden", name="Hidden", available_in_chat=False)
        conversation = make_conversation()

        tools = build_tools(db_session, conversation.id, mailbox, None)

        assert "hidden" not in tools
        assert tools["get_order"].description == "Get order - Look up an order"
        assert tools["get_order"].runs_on_server is True

    def test_widget_tools_run_client_side(self, db_session, mailbox, make_conversation):
        tools = build_tools(db_session, make_conversation().id, mailbox, None)

        add_read_page_tool(tools, {"toolName": "read_page", "toolDescription": "Read the page"})
        add_client_tools(
            tools,
            [{"name": "add_to_cart", "parameters": {"sku": {"type": "string"}}}],
        )

        assert tools["read_page"].runs_on_server is False
        assert tools["add_to_cart"].to_anthropic()["input_schema"]["required"] == ["sku"]


class TestToolHandlers:
    async def test_set_user_email(self, db_session, mailbox, make_conversation):
        conversation = make_conversation()
        tools = build_tools(db_session, conversation.id, mailbox, None)

        result = await tools["set_user_email"].handler({"email": "new@example.com"})

        assert "email has been set" in result
        assert conversation.email_from == "new@example.com"

    async def test_knowledge_base_without_matches(
        self, db_session, mailbox, make_conversation
    ):
        tools = build_tools(db_session, make_conversation().id, mailbox, None)

        with patch(
            "helpdesk.services.retrieval.generate_embedding",
            new=AsyncMock(return_value=[1.0, 0.0]),
        ):
            result = await tools["knowledge_base"].handler({"query": "refunds"})

        assert result == NO_PAST_CONVERSATIONS

    async def test_mailbox_tool_error_is_returned_to_model(
        self, db_session, mailbox, make_conversation, make_tool
    ):
        make_tool()
        tools = build_tools(db_session, make_conversation().id, mailbox, None)

        result = await tools["get_order"].handler({"orderId": 7})

        payload = json.loads(result)
        assert payload["success"] is False
        assert "orderId" in payload["message"]

    async def test_mailbox_tool_uses_conversation_email(
        self, db_session, mailbox, make_conversation, make_tool
    ):
        make_tool(
            parameters=[
                {"name": "orderId", "in": "path", "type": "string", "required": True},
                {"name": "customerEmail", "in": "query", "type": "string", "required": True},
            ],
            customer_email_parameter="customerEmail",
        )
        conversation = make_conversation(email_from="jane@example.com")
        tools = build_tools(db_session, conversation.id, mailbox, "jane@example.com")

        with patch(
            "helpdesk.orchestrator.tools.builtin.call_tool_api",
            new=AsyncMock(return_value={"success": True, "data": {"status": "shipped"}}),
        ) as call:
            result = await tools["get_order"].handler(
                {"orderId": "A1", "customerEmail": "mallory@example.com"}
            )

        assert json.loads(result)["data"] == {"status": "shipped"}
        params = call.await_args.args[3]
        assert params == {"orderId": "A1", "customerEmail": "jane@example.com"}


class TestRequestHumanSupport:
    async def test_escalates_root_of_merge_chain(self, db_session, mailbox, make_conversation):
        root = make_conversation(assigned_to_ai=True, status="closed")
        merged = make_conversation(merged_into_id=root.id)

        result = await request_human_support(
            db_session, merged.id, mailbox, None, "Customer disputes a double charge on order 42"
        )

        assert result == ESCALATION_RESULT
        assert root.assigned_to_ai is False
        assert root.status == "open"
        event = db_session.scalars(
            select(ConversationEvent).where(ConversationEvent.conversation_id == root.id)
        ).one()
        assert event.type == "request_human_support"
        assert event.reason == "Customer disputes a double charge on order 42"
        assert job_dispatcher.get_pending_jobs(db_session, job_dispatcher.HUMAN_SUPPORT_REQUESTED) == []

    async def test_new_email_saved_and_notification_enqueued(
        self, db_session, mailbox, make_conversation
    ):
        mailbox.metadata_endpoint_url = "https://crm.example.com/meta"
        mailbox.metadata_hmac_secret = "hlpr_secret"
        conversation = make_conversation()
        metadata = {"prompt": "Gold", "metadata": {"name": "Jane", "value": 300}}

        with patch(
            "helpdesk.orchestrator.tools.builtin.fetch_metadata",
            new=AsyncMock(return_value=metadata),
        ):
            await request_human_support(
                db_session, conversation.id, mailbox, None, "Wrong size delivered", "jane@example.com"
            )

        assert conversation.email_from == "jane@example.com"
        jobs = job_dispatcher.get_pending_jobs(db_session, job_dispatcher.HUMAN_SUPPORT_REQUESTED)
        assert [job.payload for job in jobs] == [{"conversationId": conversation.id}]
        customer = db_session.scalars(select(PlatformCustomer)).one()
        assert (customer.name, customer.value) == ("Jane", 30000)


async def test_fetch_user_information_failure(mailbox):
    with patch(
        "helpdesk.orchestrator.tools.builtin.fetch_metadata",
        new=AsyncMock(side_effect=RuntimeError("boom")),
    ):
        assert await fetch_user_information(mailbox, "jane@example.com") == METADATA_ERROR
