"""Built-in chat tools and assembly of the full tool set for one conversation."""

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.db.models import ConversationEventType, ConversationStatus, Mailbox, Tool
from helpdesk.errors import ToolApiError
from helpdesk.orchestrator.prompts import REQUEST_HUMAN_SUPPORT_DESCRIPTION
from helpdesk.orchestrator.tools.api_tool import (
    build_ai_tools,
    call_tool_api,
    get_mailbox_tools_for_chat,
)
from helpdesk.orchestrator.tools.core import ToolDefinition, ToolHandler, tool_error
from helpdesk.orchestrator.tools.parameters import (
    ParameterDescriptor,
    build_parameter_validator,
    client_tool_descriptors,
)
from helpdesk.services import job_dispatcher
from helpdesk.services.conversation_service import (
    get_conversation,
    update_conversation,
    update_original_conversation,
)
from helpdesk.services.metadata_api import fetch_metadata, has_metadata_api
from helpdesk.services.platform_customer_service import upsert_platform_customer
from helpdesk.services.retrieval import get_past_conversations_prompt

logger = logging.getLogger(__name__)

GUIDE_USER_TOOL_NAME = "guide_user"
REQUEST_HUMAN_SUPPORT_TOOL_NAME = "request_human_support"
FETCH_USER_INFORMATION_TOOL_NAME = "fetch_user_information"

ESCALATION_RESULT = (
    "The conversation has been escalated to a human agent. You will be contacted soon by email."
)
EMAIL_SET_RESULT = "Your email has been set. You can now request human support if needed."
NO_PAST_CONVERSATIONS = "No past conversations found"
METADATA_ERROR = "Error fetching metadata"

ESCALATION_REASON_DESCRIPTION = (
    "Escalation reasons must include specific details about the issue. Simply stating a "
    "human is needed without context is not acceptable, even if the user stated several "
    "times or said it's urgent."
)


async def search_knowledge_base(db: Session, query: str) -> str:
    return await get_past_conversations_prompt(db, query) or NO_PAST_CONVERSATIONS


def set_user_email(db: Session, conversation_id: int, email: str) -> str:
    update_conversation(
        db,
        conversation_id,
        {"email_from": email},
        message="Email set by user",
    )
    return EMAIL_SET_RESULT


async def update_customer_metadata(db: Session, mailbox: Mailbox, email: str) -> None:
    """Refresh the platform customer from the metadata API, if it answers."""
    metadata = await fetch_metadata(mailbox, email)
    customer_metadata = (metadata or {}).get("metadata")
    if customer_metadata:
        upsert_platform_customer(db, email, customer_metadata)


async def request_human_support(
    db: Session,
    conversation_id: int,
    mailbox: Mailbox,
    email: str | None,
    reason: str,
    new_email: str | None = None,
) -> str:
    """Hand the conversation to human staff.

    A newly supplied email is saved first. The root conversation is reopened
    and taken off AI assignment with a request_human_support event carrying
    the reason; when an email is known the customer record is refreshed and
    a human-support notification job is enqueued.
    """
    conversation = get_conversation(db, conversation_id)

    if new_email:
        update_conversation(
            db,
            conversation.id,
            {"email_from": new_email},
            message="Email set for escalation",
        )
        email = new_email

    update_original_conversation(
        db,
        conversation.id,
        updates={
            "status": ConversationStatus.open.value,
            "assigned_to_ai": False,
        },
        message=reason,
        event_type=ConversationEventType.request_human_support.value,
    )

    if email:
        try:
            await update_customer_metadata(db, mailbox, email)
        except Exception:
            db.rollback()
            logger.exception("Failed to refresh customer metadata for escalation")
        job_dispatcher.trigger_event(
            db,
            job_dispatcher.HUMAN_SUPPORT_REQUESTED,
            {"conversationId": conversation.id},
            commit=True,
        )

    logger.info("human_support_requested conversation=%s", conversation.id)
    return ESCALATION_RESULT


async def fetch_user_information(mailbox: Mailbox, email: str) -> str | None:
    try:
        metadata = await fetch_metadata(mailbox, email)
    except Exception:
        logger.exception("Failed to fetch user information")
        return METADATA_ERROR
    return (metadata or {}).get("prompt")


async def run_mailbox_tool(
    db: Session,
    conversation_id: int,
    tool_slug: str,
    email: str | None,
    customer_email_parameter: str | None,
    params: dict[str, Any],
) -> str:
    """Run a stored tool for the chat model and return its JSON result."""
    params = dict(params)
    if customer_email_parameter and email:
        params[customer_email_parameter] = email

    conversation = get_conversation(db, conversation_id)
    tool = db.scalars(select(Tool).where(Tool.slug == tool_slug)).one()
    try:
        result = await call_tool_api(db, conversation, tool, params)
    except ToolApiError as e:
        return tool_error(str(e))
    return json.dumps(result, default=str)


def build_tools(
    db: Session,
    conversation_id: int,
    mailbox: Mailbox,
    email: str | None,
    include_human_support: bool = True,
    guide_enabled: bool = False,
    include_mailbox_tools: bool = True,
) -> dict[str, ToolDefinition]:
    """Assemble the server-side tool set for one conversation.

    Args:
        db: Database session used by tool handlers.
        conversation_id: Conversation the tools act on.
        mailbox: Mailbox the conversation belongs to.
        email: Known customer email, None for anonymous visitors.
        include_human_support: Offer request_human_support.
        guide_enabled: Offer the client-side guide_user tool.
        include_mailbox_tools: Offer the mailbox's stored chat tools.

    Returns:
        Tool definitions keyed by tool name.
    """
    tools: dict[str, ToolDefinition] = {}

    async def knowledge_base(args: dict[str, Any]) -> str:
        return await search_knowledge_base(db, args["query"])

    tools["knowledge_base"] = ToolDefinition(
        name="knowledge_base",
        description="search the knowledge base",
        parameters=build_parameter_validator(
            [ParameterDescriptor("query", description="query to search the knowledge base")]
        ),
        handler=knowledge_base,
    )

    if guide_enabled:
        tools[GUIDE_USER_TOOL_NAME] = ToolDefinition(
            name=GUIDE_USER_TOOL_NAME,
            description=(
                "call this tool to guide the user in the interface instead of returning "
                "a text response"
            ),
            parameters=build_parameter_validator(
                [
                    ParameterDescriptor(
                        "title",
                        description="title of the guide that will be displayed to the user",
                    ),
                    ParameterDescriptor(
                        "instructions",
                        description=(
                            "instructions for the guide based on the current page and "
                            "knowledge base"
                        ),
                    ),
                ]
            ),
        )

    if not email:
        async def set_email(args: dict[str, Any]) -> str:
            return set_user_email(db, conversation_id, args["email"])

        tools["set_user_email"] = ToolDefinition(
            name="set_user_email",
            description=(
                "Set the email address for the current anonymous user, so that the user "
                "can be contacted later"
            ),
            parameters=build_parameter_validator(
                [
                    ParameterDescriptor(
                        "email", kind="email", description="email address to set for the user"
                    )
                ]
            ),
            handler=set_email,
        )

    if include_human_support:
        async def human_support(args: dict[str, Any]) -> str:
            return await request_human_support(
                db, conversation_id, mailbox, email, args["reason"], args.get("email")
            )

        email_descriptor = (
            ParameterDescriptor("email", required=False)
            if email
            else ParameterDescriptor(
                "email",
                kind="email",
                description="email address to contact you (required for anonymous users)",
            )
        )
        tools[REQUEST_HUMAN_SUPPORT_TOOL_NAME] = ToolDefinition(
            name=REQUEST_HUMAN_SUPPORT_TOOL_NAME,
            description=REQUEST_HUMAN_SUPPORT_DESCRIPTION,
            parameters=build_parameter_validator(
                [
                    ParameterDescriptor("reason", description=ESCALATION_REASON_DESCRIPTION),
                    email_descriptor,
                ]
            ),
            handler=human_support,
        )

    if email and has_metadata_api(mailbox):
        async def user_information(args: dict[str, Any]) -> str:
            return await fetch_user_information(mailbox, email) or ""

        tools[FETCH_USER_INFORMATION_TOOL_NAME] = ToolDefinition(
            name=FETCH_USER_INFORMATION_TOOL_NAME,
            description="fetch user related information",
            parameters=build_parameter_validator(
                [ParameterDescriptor("reason", description="reason for fetching user information")]
            ),
            handler=user_information,
        )

    if include_mailbox_tools:
        for slug, ai_tool in build_ai_tools(get_mailbox_tools_for_chat(db), email).items():
            tools[slug] = ToolDefinition(
                name=slug,
                description=ai_tool["description"],
                parameters=ai_tool["parameters"],
                handler=_mailbox_tool_handler(
                    db, conversation_id, slug, email, ai_tool["customer_email_parameter"]
                ),
            )

    return tools


def _mailbox_tool_handler(
    db: Session,
    conversation_id: int,
    slug: str,
    email: str | None,
    customer_email_parameter: str | None,
) -> ToolHandler:
    async def handler(args: dict[str, Any]) -> str:
        return await run_mailbox_tool(
            db, conversation_id, slug, email, customer_email_parameter, args
        )

    return handler


def add_read_page_tool(tools: dict[str, ToolDefinition], read_page_tool: dict[str, Any]) -> None:
    """Register the widget's page-reading tool; it runs in the browser."""
    name = read_page_tool["toolName"]
    tools[name] = ToolDefinition(
        name=name,
        description=read_page_tool.get("toolDescription", ""),
        parameters=build_parameter_validator([]),
    )


def add_client_tools(tools: dict[str, ToolDefinition], client_tools: list[dict[str, Any]]) -> None:
    """Register tools supplied by the widget; they run in the browser."""
    for client_tool in client_tools:
        tools[client_tool["name"]] = ToolDefinition(
            name=client_tool["name"],
            description=client_tool.get("description", ""),
            parameters=build_parameter_validator(
                client_tool_descriptors(client_tool.get("parameters") or {})
            ),
        )
