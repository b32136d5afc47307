"""Chat response orchestration.

respond_with_ai decides how a new widget message is answered:

1. Conversations owned by a human (and not a fresh prompt conversation) get
   a canned handoff reply on their first turns and silence afterwards.
2. The first message of a prompt conversation is answered from the
   response cache when possible, without calling any model.
3. Otherwise the answer is generated: prompt building, the optional
   reasoning pass and the tool-calling completion, streamed to the widget.

A generated answer is persisted only when the completion finished normally
('stop' or 'tool-calls'); each persisted answer schedules one
conversations/check-resolution job.
"""

import asyncio
import base64
import inspect
import logging
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from openai import AsyncOpenAI
from sqlalchemy.orm import Session

from helpdesk.db.models import (
    Conversation,
    ConversationMessage,
    ConversationStatus,
    Mailbox,
    MessageRole,
    MessageStatus,
    PlatformCustomer,
)
from helpdesk.orchestrator.completion import CompletionResult, CompletionRun
from helpdesk.orchestrator.config import get_completion_timeout
from helpdesk.orchestrator.messages import ChatMessage, load_previous_messages
from helpdesk.orchestrator.models import (
    AnthropicCompletionModel,
    CompletionModel,
    check_token_count_and_summarize_if_needed,
)
from helpdesk.orchestrator.prompts import GUIDE_INSTRUCTIONS, render_system_prompt
from helpdesk.orchestrator.reasoning import generate_reasoning, reasoning_system_message
from helpdesk.orchestrator.stream import (
    FINISH,
    DataStream,
    DataStreamWriter,
    StreamPart,
    create_data_stream,
    hide_tool_results,
)
from helpdesk.orchestrator.tools import (
    FETCH_USER_INFORMATION_TOOL_NAME,
    REQUEST_HUMAN_SUPPORT_TOOL_NAME,
    add_client_tools,
    add_read_page_tool,
    build_tools,
)
from helpdesk.services import job_dispatcher
from helpdesk.services.conversation_message_service import create_conversation_message
from helpdesk.services.conversation_service import update_original_conversation
from helpdesk.services.platform_customer_service import get_platform_customer
from helpdesk.services.response_cache import cache_initial_response, get_cached_initial_response
from helpdesk.services.retrieval import fetch_prompt_retrieval_data
from helpdesk.services.usage_tracker import TokenUsage, track_ai_usage_event
from helpdesk.utils.runtime import is_development

logger = logging.getLogger(__name__)

HANDOFF_TEXT = (
    "Our support team will respond to your message shortly. Thank you for your patience."
)
ESCALATION_TEXT = "_Escalated to a human! You will be contacted soon here and by email._"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

PERSISTED_FINISH_REASONS = ("stop", "tool-calls")
REASONING_USAGE_MODEL = "fireworks/deepseek-r1"
# The completion provider has no seed parameter; evaluation runs record it only
EVALUATION_SEED = 100

CHECK_RESOLUTION_DELAY_SECONDS = 24 * 60 * 60
DEV_CHECK_RESOLUTION_DELAY_SECONDS = 5 * 60

CITATION_PATTERN = re.compile(r"\[\((\d+)\)\]\((https?://[^\s)]+)\)")


@dataclass
class PromptMessages:
    """System prompt plus what went into it.

    Attributes:
        system: Full system prompt sent to the model.
        sources: Website pages retrieved for the query, each
            {url, page_title, markdown, similarity}.
        prompt_info: Prompt breakdown shown to staff.
    """

    system: str
    sources: list[dict[str, Any]]
    prompt_info: dict[str, Any]


@dataclass
class FinishEvent:
    """Outcome of a generated answer, passed to on_finish."""

    text: str
    finish_reason: str
    result: CompletionResult
    trace_id: str
    reasoning: str | None
    sources: list[dict[str, Any]]
    prompt_info: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResponseContext:
    """What the on_response callback learns about an answered message."""

    messages: list[ChatMessage]
    platform_customer: PlatformCustomer | None
    is_prompt_conversation: bool
    is_first_message: bool
    human_support_requested: bool


@dataclass
class ChatResponse:
    """Outward stream of a chat answer and the headers to send it with."""

    stream: DataStream
    headers: dict[str, str] = field(default_factory=lambda: dict(CORS_HEADERS))


class FileStore(Protocol):
    """Storage for uploaded attachments."""

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Store data under key and return the stored file id."""
        ...


OnFinish = Callable[[FinishEvent], Awaitable[None]]
OnResponse = Callable[[ResponseContext], Awaitable[None] | None]


async def build_prompt_messages(
    db: Session,
    mailbox: Mailbox,
    email: str | None,
    query: str,
    guide_enabled: bool = False,
) -> PromptMessages:
    """Compose the system prompt for a query.

    Retrieval blocks are optional; the closing identity line is always
    present so the model knows whether the customer is authenticated.
    """
    retrieval = await fetch_prompt_retrieval_data(db, query, None)

    system_prompt = render_system_prompt(
        mailbox.name, datetime.now(timezone.utc).isoformat()
    )
    if guide_enabled:
        system_prompt = f"{system_prompt}\n{GUIDE_INSTRUCTIONS}"

    user_prompt = f"Current user email: {email}" if email else "Anonymous user"
    blocks = [system_prompt, retrieval.knowledge_bank, retrieval.website_pages_prompt, user_prompt]

    return PromptMessages(
        system="\n".join(block for block in blocks if block),
        sources=retrieval.website_pages,
        prompt_info={
            "systemPrompt": system_prompt,
            "knowledgeBank": retrieval.knowledge_bank,
            "websitePages": [
                {
                    "url": page["url"],
                    "title": page["page_title"],
                    "similarity": page["similarity"],
                }
                for page in retrieval.website_pages
            ],
            "userPrompt": user_prompt,
        },
    )


def parse_citations(text: str, sources: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Extract [(n)](url) citations as source records.

    Citations are deduplicated by number (the last occurrence wins) and
    sorted numerically. The title comes from the retrieved page with the
    same URL, falling back to the URL itself.
    """
    titles = {source["url"]: source.get("page_title") for source in sources}
    by_id: dict[str, dict[str, str]] = {}
    for citation_id, url in CITATION_PATTERN.findall(text):
        by_id[citation_id] = {
            "sourceType": "url",
            "id": citation_id,
            "url": url,
            "title": titles.get(url) or url,
        }
    return [by_id[key] for key in sorted(by_id, key=int)]


def create_text_response(text: str, message_id: str) -> ChatResponse:
    """Stream a fixed text followed by the message id annotation."""

    async def execute(data_stream: DataStreamWriter) -> None:
        data_stream.write_text(text)
        data_stream.write_message_annotation({"id": message_id})

    return ChatResponse(stream=create_data_stream(execute))


async def generate_ai_response(
    db: Session,
    messages: list[ChatMessage],
    mailbox: Mailbox,
    conversation_id: int,
    email: str | None,
    read_page_tool: dict[str, Any] | None = None,
    guide_enabled: bool = False,
    client_tools: list[dict[str, Any]] | None = None,
    model: CompletionModel | None = None,
    add_reasoning: bool = False,
    reasoning_client: AsyncOpenAI | None = None,
    evaluation: bool = False,
    data_stream: DataStreamWriter | None = None,
    on_finish: OnFinish | None = None,
) -> AsyncIterator[StreamPart]:
    """Generate an answer to the latest user message.

    Builds the prompt and tool set, runs the reasoning pass when requested,
    then streams the tool-calling completion with tool results hidden.
    Usage is tracked outside evaluation runs, and on_finish runs before the
    finish part is yielded.

    Args:
        db: Database session.
        messages: Conversation history ending with the new user message.
        mailbox: Mailbox being answered for.
        conversation_id: Conversation being answered.
        email: Customer email, None for anonymous visitors.
        read_page_tool: Widget page-reading tool {toolName, toolDescription}.
        guide_enabled: Offer the guide_user tool and instructions.
        client_tools: Ad-hoc tools supplied by the widget.
        model: Completion model, Anthropic by default.
        add_reasoning: Run the reasoning pass first.
        reasoning_client: Optional OpenAI-compatible reasoning client.
        evaluation: Offline evaluation run; usage is not tracked.
        data_stream: Writer receiving reasoning progress.
        on_finish: Callback receiving the FinishEvent.

    Yields:
        StreamParts of the completion, tool results excluded.
    """
    query = next((m.content for m in reversed(messages) if m.role == "user"), "")
    prompt = await build_prompt_messages(db, mailbox, email, query, guide_enabled)

    tools = build_tools(db, conversation_id, mailbox, email, True, guide_enabled)
    if read_page_tool:
        add_read_page_tool(tools, read_page_tool)
    if client_tools:
        add_client_tools(tools, client_tools)

    trace_id = str(uuid.uuid4())
    system = prompt.system
    reasoning: str | None = None

    if add_reasoning:
        reasoning_result = await generate_reasoning(
            tools,
            prompt.system,
            messages,
            email,
            conversation_id,
            trace_id=trace_id,
            evaluation=evaluation,
            data_stream=data_stream,
            client=reasoning_client,
        )
        if not evaluation:
            await track_ai_usage_event(
                db,
                model=REASONING_USAGE_MODEL,
                query_type="reasoning",
                usage=reasoning_result.usage or TokenUsage(),
                mailbox=mailbox,
            )
        if reasoning_result.reasoning:
            reasoning = reasoning_result.reasoning
            system = f"{system}\n\n{reasoning_system_message(reasoning)}"

    model = model or AnthropicCompletionModel()
    run = CompletionRun(model, system, messages, tools)
    metadata = {
        "conversationId": str(conversation_id),
        "email": email or "anonymous",
        "usingReasoning": add_reasoning,
        "seed": EVALUATION_SEED if evaluation else None,
    }
    logger.info(
        "completion_started conversation=%s model=%s tools=%d reasoning=%s",
        conversation_id,
        model.model_name,
        len(tools),
        reasoning is not None,
    )

    async for part in hide_tool_results(run.stream()):
        if part.type == FINISH:
            if not evaluation:
                await track_ai_usage_event(
                    db,
                    model=model.model_name,
                    query_type="chat_completion",
                    usage=run.result.usage,
                    mailbox=mailbox,
                )
            if on_finish is not None:
                await on_finish(
                    FinishEvent(
                        text=run.result.text,
                        finish_reason=run.result.finish_reason,
                        result=run.result,
                        trace_id=trace_id,
                        reasoning=reasoning,
                        sources=prompt.sources,
                        prompt_info={**prompt.prompt_info, "availableTools": list(tools)},
                        metadata=metadata,
                    )
                )
        yield part


def _create_assistant_message(
    db: Session,
    conversation_id: int,
    user_message_id: int,
    text: str,
    send_email: bool,
    trace_id: str | None = None,
    reasoning: str | None = None,
    human_handoff: bool = False,
) -> ConversationMessage:
    metadata: dict[str, Any] = {"trace_id": trace_id, "reasoning": reasoning}
    if human_handoff:
        metadata["human_handoff"] = True
    return create_conversation_message(
        db,
        conversation_id=conversation_id,
        role=MessageRole.ai_assistant.value,
        status=MessageStatus.queueing.value if send_email else MessageStatus.sent.value,
        body=text,
        cleaned_up_text=text,
        response_to_id=user_message_id,
        metadata=metadata,
    )


async def _notify(on_response: OnResponse | None, context: ResponseContext) -> None:
    if on_response is None:
        return
    result = on_response(context)
    if inspect.isawaitable(result):
        await result


def _check_resolution_delay() -> int:
    return DEV_CHECK_RESOLUTION_DELAY_SECONDS if is_development() else CHECK_RESOLUTION_DELAY_SECONDS


async def respond_with_ai(
    db: Session,
    conversation: Conversation,
    mailbox: Mailbox,
    user_email: str | None,
    send_email: bool,
    message: ChatMessage,
    message_id: int,
    read_page_tool: dict[str, Any] | None = None,
    guide_enabled: bool = False,
    on_response: OnResponse | None = None,
    is_helper_user: bool = False,
    reasoning_enabled: bool = True,
    tools: list[dict[str, Any]] | None = None,
    model: CompletionModel | None = None,
    reasoning_client: AsyncOpenAI | None = None,
    evaluation: bool = False,
) -> ChatResponse:
    """Answer a new customer message.

    Args:
        db: Database session; must stay open until the stream is drained.
        conversation: Conversation the message belongs to.
        mailbox: Mailbox being answered for.
        user_email: Authenticated customer email, None for anonymous visitors.
        send_email: Queue the answer for email delivery instead of marking it sent.
        message: The new user message.
        message_id: Id of the persisted user message.
        read_page_tool: Widget page-reading tool {toolName, toolDescription}.
        guide_enabled: Offer the guide_user tool.
        on_response: Called once the answer is persisted, or when the
            conversation is left to humans.
        is_helper_user: Staff member chatting; prompt info is annotated.
        reasoning_enabled: Run the reasoning pass.
        tools: Ad-hoc tools supplied by the widget.
        model: Completion model, Anthropic by default.
        reasoning_client: Optional OpenAI-compatible reasoning client.
        evaluation: Offline evaluation run.

    Returns:
        ChatResponse whose stream yields {"event", "data"} parts.
    """
    previous_messages = load_previous_messages(db, conversation.id, message_id)
    messages = [*previous_messages, message]

    platform_customer = get_platform_customer(db, user_email) if user_email else None
    is_prompt_conversation = conversation.is_prompt
    is_first_message = len(messages) == 1

    def context(human_support_requested: bool) -> ResponseContext:
        return ResponseContext(
            messages=messages,
            platform_customer=platform_customer,
            is_prompt_conversation=is_prompt_conversation,
            is_first_message=is_first_message,
            human_support_requested=human_support_requested,
        )

    async def handle_assistant_message(
        text: str,
        human_support_requested: bool,
        trace_id: str | None = None,
        reasoning: str | None = None,
        human_handoff: bool = False,
    ) -> ConversationMessage:
        if not human_support_requested:
            update_original_conversation(db, conversation.id, updates={"assigned_to_ai": True})
        assistant_message = _create_assistant_message(
            db,
            conversation.id,
            message_id,
            text,
            send_email,
            trace_id=trace_id,
            reasoning=reasoning,
            human_handoff=human_handoff,
        )
        await _notify(on_response, context(human_support_requested))
        return assistant_message

    if not conversation.assigned_to_ai and (not is_prompt_conversation or not is_first_message):
        update_original_conversation(
            db, conversation.id, updates={"status": ConversationStatus.open.value}
        )
        user_turns = sum(1 for m in messages if m.role == "user")
        if len(messages) == 1 or (is_prompt_conversation and user_turns == 2):
            assistant_message = await handle_assistant_message(
                HANDOFF_TEXT, True, human_handoff=True
            )
            logger.info("human_handoff conversation=%s canned=True", conversation.id)
            return create_text_response(HANDOFF_TEXT, str(assistant_message.id))

        logger.info("human_handoff conversation=%s canned=False", conversation.id)
        await _notify(on_response, context(True))
        return create_text_response("", str(int(time.time() * 1000)))

    if is_first_message and is_prompt_conversation:
        cached = await get_cached_initial_response(mailbox.id, message.content)
        if cached is not None:
            logger.info("initial_response_cache_hit conversation=%s", conversation.id)
            assistant_message = await handle_assistant_message(cached, False)
            return create_text_response(cached, str(assistant_message.id))

    model_message = replace(
        message,
        content=await check_token_count_and_summarize_if_needed(db, message.content, mailbox),
    )
    model_messages = [*previous_messages, model_message]

    async def execute(data_stream: DataStreamWriter) -> None:
        async def on_finish(event: FinishEvent) -> None:
            has_sensitive_tool_call = event.result.called_tool_matching(
                FETCH_USER_INFORMATION_TOOL_NAME
            )
            human_support_requested = event.result.called_tool(REQUEST_HUMAN_SUPPORT_TOOL_NAME)

            if event.finish_reason not in PERSISTED_FINISH_REASONS:
                logger.warning(
                    "Not persisting answer for conversation %s: finish_reason=%s",
                    conversation.id,
                    event.finish_reason,
                )
                return

            response_text = ESCALATION_TEXT if human_support_requested else event.text
            assistant_message = await handle_assistant_message(
                response_text,
                human_support_requested,
                trace_id=event.trace_id,
                reasoning=event.reasoning,
            )
            job_dispatcher.trigger_event(
                db,
                job_dispatcher.CHECK_RESOLUTION,
                {"conversationId": conversation.id, "messageId": assistant_message.id},
                sleep_seconds=_check_resolution_delay(),
                commit=True,
            )

            for source in parse_citations(event.text, event.sources):
                data_stream.write_source(source)

            if is_helper_user:
                data_stream.write_message_annotation({"promptInfo": event.prompt_info})
            data_stream.write_message_annotation(
                {"id": str(assistant_message.id), "traceId": event.trace_id}
            )

            if (
                event.finish_reason == "stop"
                and is_first_message
                and not has_sensitive_tool_call
                and not human_support_requested
            ):
                await cache_initial_response(mailbox.id, message.content, response_text)

        parts = generate_ai_response(
            db,
            model_messages,
            mailbox,
            conversation.id,
            user_email,
            read_page_tool=read_page_tool,
            guide_enabled=guide_enabled,
            client_tools=tools,
            model=model,
            add_reasoning=reasoning_enabled,
            reasoning_client=reasoning_client,
            evaluation=evaluation,
            data_stream=data_stream,
            on_finish=on_finish,
        )
        async with asyncio.timeout(get_completion_timeout()):
            await data_stream.merge(parts)

    return ChatResponse(stream=create_data_stream(execute))


def create_user_message(
    db: Session,
    conversation_id: int,
    email: str | None,
    query: str,
    attachment_data: list[dict[str, str]],
    file_store: FileStore | None = None,
) -> ConversationMessage:
    """Persist a widget message and its attachments.

    Each attachment is {name, contentType, data} with base64 data. Stored
    attachments get a files/preview.generate job.
    """
    has_attachments = bool(attachment_data)
    message = create_conversation_message(
        db,
        conversation_id=conversation_id,
        role=MessageRole.user.value,
        body=query,
        cleaned_up_text=query,
        email_from=email,
        metadata={"hasAttachments": has_attachments},
    )

    if has_attachments and file_store is None:
        logger.warning(
            "No file store configured, dropping %d attachment(s) of message %s",
            len(attachment_data),
            message.id,
        )
        return message

    for attachment in attachment_data:
        key = f"attachments/{conversation_id}/{uuid.uuid4().hex}/{attachment['name']}"
        file_id = file_store.upload(
            key,
            base64.b64decode(attachment["data"]),
            attachment.get("contentType") or "image/png",
        )
        job_dispatcher.trigger_event(
            db, job_dispatcher.FILE_PREVIEW_GENERATE, {"fileId": file_id}
        )
    if has_attachments:
        db.commit()
    return message
