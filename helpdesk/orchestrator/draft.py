"""Email-style AI drafts for staff review.

A draft answers the latest customer message as a complete email. The system
prompt combines the knowledge bank, similar website pages, similar past
conversations and the customer's metadata; the conversation history is sent
as a single prompt. The markdown result is stored as sanitized HTML and
replaces any previous live draft.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from helpdesk.db.models import ConversationMessage, Mailbox, MessageRole
from helpdesk.errors import NotFoundError
from helpdesk.orchestrator.completion import CompletionRun
from helpdesk.orchestrator.messages import ChatMessage
from helpdesk.orchestrator.models import AnthropicCompletionModel, CompletionModel
from helpdesk.orchestrator.prompts import (
    DRAFT_GLOBAL_RULES,
    DRAFT_SYSTEM_PROMPT,
    clean_up_text_for_ai,
)
from helpdesk.orchestrator.tools import build_tools
from helpdesk.services.conversation_message_service import (
    create_ai_draft,
    get_last_user_message,
    get_messages_only,
)
from helpdesk.services.conversation_service import get_conversation
from helpdesk.services.retrieval import fetch_prompt_retrieval_data, get_past_conversations_prompt
from helpdesk.services.usage_tracker import track_ai_usage_event

logger = logging.getLogger(__name__)

DRAFT_MAX_STEPS = 5
DRAFT_QUERY_TYPE = "draft_response"


@dataclass
class DraftPrompt:
    system: str
    prompt_info: dict[str, Any]


def text_with_subject(subject: str | None, message: ConversationMessage) -> str:
    """Message text prefixed with the conversation subject, when there is one."""
    text = message.cleaned_up_text or message.body or ""
    return f"{subject}\n\n{text}" if subject else text


def build_history_prompt(db: Session, conversation_id: int) -> str:
    """Render the visible conversation history as one prompt.

    Tool events and messages without text are left out.
    """
    rendered = []
    for message in get_messages_only(db, conversation_id):
        if message.role == MessageRole.tool.value:
            continue
        if not message.cleaned_up_text or not message.cleaned_up_text.strip():
            continue
        role = "user" if message.role == MessageRole.user.value else "assistant"
        rendered.append(
            f"<message><role>{role}</role><content>{message.cleaned_up_text}</content></message>"
        )
    history = clean_up_text_for_ai("\n".join(rendered))
    return f"This is the conversation history: <messages>{history}</messages>"


async def build_draft_prompt(
    db: Session,
    query: str,
    metadata: dict[str, Any] | None,
) -> DraftPrompt:
    retrieval = await fetch_prompt_retrieval_data(db, query, metadata)
    past_conversations = await get_past_conversations_prompt(db, query)

    blocks = [
        DRAFT_SYSTEM_PROMPT,
        retrieval.knowledge_bank,
        retrieval.website_pages_prompt,
        past_conversations,
        retrieval.metadata,
        DRAFT_GLOBAL_RULES,
    ]
    return DraftPrompt(
        system="\n".join(block for block in blocks if block),
        prompt_info={
            "pastConversations": past_conversations,
            "knowledgeBank": retrieval.knowledge_bank,
            "metadata": retrieval.metadata,
        },
    )


async def generate_draft_response(
    db: Session,
    conversation_id: int,
    mailbox: Mailbox,
    metadata: dict[str, Any] | None = None,
    enable_mailbox_tools: bool = False,
    model: CompletionModel | None = None,
) -> ConversationMessage:
    """Generate an email draft answering the latest customer message.

    Args:
        db: Database session.
        conversation_id: Conversation to draft a reply for.
        mailbox: Mailbox the conversation belongs to.
        metadata: Customer metadata from the metadata API, if fetched.
        enable_mailbox_tools: Let the model call the mailbox's stored tools.
        model: Completion model, Anthropic by default.

    Returns:
        The new draft message. Any previous live draft is discarded in the
        same transaction.

    Raises:
        NotFoundError: If the conversation has no user message.
    """
    conversation = get_conversation(db, conversation_id)
    last_user_message = get_last_user_message(db, conversation_id)
    if last_user_message is None:
        raise NotFoundError("User message in conversation", str(conversation_id))

    query = text_with_subject(conversation.subject, last_user_message)
    prompt = await build_draft_prompt(db, query, metadata)
    tools = build_tools(
        db,
        conversation_id,
        mailbox,
        last_user_message.email_from,
        include_human_support=False,
        include_mailbox_tools=enable_mailbox_tools,
    )

    model = model or AnthropicCompletionModel()
    run = CompletionRun(
        model,
        prompt.system,
        [
            ChatMessage(
                id=str(uuid.uuid4()),
                role="user",
                content=build_history_prompt(db, conversation_id),
            )
        ],
        tools,
        max_steps=DRAFT_MAX_STEPS,
    )
    async for _ in run.stream():
        pass

    await track_ai_usage_event(
        db,
        model=model.model_name,
        query_type=DRAFT_QUERY_TYPE,
        usage=run.result.usage,
        mailbox=mailbox,
    )
    logger.info(
        "draft_generated conversation=%s steps=%d finish_reason=%s",
        conversation_id,
        len(run.result.steps),
        run.result.finish_reason,
    )
    return create_ai_draft(
        db, conversation_id, run.result.text, last_user_message.id, prompt_info=prompt.prompt_info
    )
