"""Conversation subject lines for chat conversations."""

import logging

from sqlalchemy.orm import Session

from helpdesk.db.models import Mailbox
from helpdesk.orchestrator.messages import ChatMessage
from helpdesk.orchestrator.models import run_ai_query
from helpdesk.services.conversation_service import get_conversation

logger = logging.getLogger(__name__)

CHAT_CONVERSATION_SUBJECT = "Chat"
MAX_SUBJECT_LENGTH = 50
SUBJECT_SYSTEM_PROMPT = (
    "Generate a brief, clear subject line (max 50 chars) that summarizes the main point "
    "of these messages. Respond with only the subject line, no other text."
)


async def generate_conversation_subject(
    db: Session,
    conversation_id: int,
    messages: list[ChatMessage],
    mailbox: Mailbox,
) -> str:
    """Set a conversation's subject from its user messages.

    A single short message is used verbatim; otherwise the model writes one.
    """
    if len(messages) == 1 and len(messages[0].content) <= MAX_SUBJECT_LENGTH:
        subject = messages[0].content
    else:
        subject = await run_ai_query(
            db,
            messages=[{"role": "user", "content": m.content} for m in messages if m.role == "user"],
            query_type="response_generator",
            mailbox=mailbox,
            system=SUBJECT_SYSTEM_PROMPT,
            temperature=0,
            max_tokens=MAX_SUBJECT_LENGTH,
        )
        subject = subject.strip()

    conversation = get_conversation(db, conversation_id)
    conversation.subject = subject
    db.commit()
    logger.info("conversation_subject_updated id=%s", conversation_id)
    return subject
