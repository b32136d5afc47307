"""Persistence for conversation messages, AI drafts and tool events.

Messages are never physically deleted here: drafts move to 'discarded' when
superseded by a new AI draft or when a human reply is sent. The draft swap
runs in a single transaction so a conversation never has two live drafts.
"""

import logging
import re
from typing import Any

import markdown
import nh3
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from helpdesk.db.models import (
    DRAFT_STATUSES,
    Conversation,
    ConversationMessage,
    ConversationStatus,
    Mailbox,
    MessageRole,
    MessageStatus,
    Tool,
    as_utc,
    utc_now,
)
from helpdesk.errors import NotFoundError
from helpdesk.services import job_dispatcher
from helpdesk.services.conversation_service import update_conversation

logger = logging.getLogger(__name__)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_PARAGRAPH_BREAKS = re.compile(r"\n\n+")


def render_markdown(body: str) -> str:
    """Convert assistant markdown to sanitized HTML."""
    normalized = _PARAGRAPH_BREAKS.sub("\n\n", body.strip())
    html = markdown.markdown(normalized, extensions=["fenced_code", "tables"])
    return nh3.clean(html)


def cleanup_message(message: str) -> str:
    """Strip tags and collapse whitespace for draft comparison."""
    stripped = _TAG_PATTERN.sub("", message)
    return _WHITESPACE_PATTERN.sub(" ", stripped).strip()


def create_conversation_message(
    db: Session,
    conversation_id: int,
    role: str,
    body: str | None,
    status: str | None = None,
    cleaned_up_text: str | None = None,
    response_to_id: int | None = None,
    email_from: str | None = None,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    prompt_info: dict[str, Any] | None = None,
    commit: bool = True,
) -> ConversationMessage:
    """Insert a conversation message and enqueue its follow-up jobs.

    User messages stamp last_user_email_created_at on the conversation.
    Every non-draft message enqueues 'conversations/message.created';
    queueing messages also enqueue 'conversations/email.enqueued' after the
    undo countdown.

    Args:
        db: Database session.
        conversation_id: Parent conversation.
        role: MessageRole value.
        body: Message body.
        status: MessageStatus value.
        cleaned_up_text: Plain-text body for prompts.
        response_to_id: Message this one answers.
        email_from: Sender email for user messages.
        user_id: Staff author for staff messages.
        metadata: Role-specific metadata.
        prompt_info: Prompt details for AI drafts.
        commit: Commit immediately instead of joining the caller's transaction.

    Returns:
        The created ConversationMessage.
    """
    message = ConversationMessage(
        conversation_id=conversation_id,
        role=role,
        status=status,
        body=body,
        cleaned_up_text=cleaned_up_text,
        response_to_id=response_to_id,
        email_from=email_from,
        user_id=user_id,
        metadata_json=metadata,
        prompt_info_json=prompt_info,
        is_perfect=False,
        is_pinned=False,
        is_flagged_as_bad=False,
    )
    db.add(message)
    db.flush()

    if role == MessageRole.user.value:
        update_conversation(
            db,
            conversation_id,
            {"last_user_email_created_at": utc_now()},
            skip_realtime_events=True,
            commit=False,
        )

    if status != MessageStatus.draft.value:
        job_dispatcher.trigger_event(
            db,
            job_dispatcher.MESSAGE_CREATED,
            {"messageId": message.id, "conversationId": conversation_id},
        )
    if status == MessageStatus.queueing.value:
        job_dispatcher.trigger_event(
            db,
            job_dispatcher.EMAIL_ENQUEUED,
            {"messageId": message.id},
            sleep_seconds=job_dispatcher.EMAIL_UNDO_COUNTDOWN_SECONDS,
        )

    if commit:
        db.commit()
    return message


def get_messages_only(db: Session, conversation_id: int) -> list[ConversationMessage]:
    """Return the visible messages of a conversation, oldest first.

    Excludes soft-deleted messages and non-user messages in a draft status.
    """
    return list(
        db.scalars(
            select(ConversationMessage)
            .where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.deleted_at.is_(None),
                or_(
                    ConversationMessage.role == MessageRole.user.value,
                    ConversationMessage.status.is_(None),
                    ConversationMessage.status.not_in(DRAFT_STATUSES),
                ),
            )
            .order_by(ConversationMessage.created_at, ConversationMessage.id)
        )
    )


def get_last_user_message(db: Session, conversation_id: int) -> ConversationMessage | None:
    return db.scalars(
        select(ConversationMessage)
        .where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == MessageRole.user.value,
        )
        .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(1)
    ).first()


def get_last_ai_generated_draft(
    db: Session, conversation_id: int
) -> ConversationMessage | None:
    """Return the most recent live AI draft of a conversation, if any."""
    return db.scalars(
        select(ConversationMessage)
        .where(
            ConversationMessage.conversation_id == conversation_id,
            ConversationMessage.role == MessageRole.ai_assistant.value,
            ConversationMessage.status == MessageStatus.draft.value,
        )
        .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
        .limit(1)
    ).first()


def discard_ai_generated_drafts(db: Session, conversation_id: int) -> int:
    """Move every live AI draft of a conversation to 'discarded'.

    Flushes but does not commit; callers own the transaction.

    Returns:
        Number of drafts discarded.
    """
    result = db.execute(
        update(ConversationMessage)
        .where(
            and_(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.role == MessageRole.ai_assistant.value,
                ConversationMessage.status == MessageStatus.draft.value,
            )
        )
        .values(status=MessageStatus.discarded.value)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def create_ai_draft(
    db: Session,
    conversation_id: int,
    body: str,
    response_to_id: int,
    prompt_info: dict[str, Any] | None = None,
) -> ConversationMessage:
    """Replace the conversation's live AI draft with a new one.

    Discarding the previous drafts and inserting the new draft commit
    together; on any failure both are rolled back.

    Args:
        db: Database session.
        conversation_id: Parent conversation.
        body: Draft text in markdown, stored as sanitized HTML.
        response_to_id: User message the draft answers.
        prompt_info: Prompt details kept for staff review.

    Returns:
        The new draft message.

    Raises:
        ValueError: If response_to_id is missing.
    """
    if not response_to_id:
        raise ValueError("response_to_id is required")

    try:
        discarded = discard_ai_generated_drafts(db, conversation_id)
        draft = create_conversation_message(
            db,
            conversation_id=conversation_id,
            role=MessageRole.ai_assistant.value,
            status=MessageStatus.draft.value,
            body=render_markdown(body),
            cleaned_up_text=body,
            response_to_id=response_to_id,
            prompt_info={"details": prompt_info} if prompt_info else None,
            commit=False,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "ai_draft_created conversation=%s draft=%s discarded=%d",
        conversation_id,
        draft.id,
        discarded,
    )
    return draft


def is_ai_draft_stale(draft: ConversationMessage, mailbox: Mailbox) -> bool:
    """A draft is stale once it is no longer live or predates the mailbox prompt."""
    if draft.status != MessageStatus.draft.value:
        return True
    return as_utc(draft.created_at) < as_utc(mailbox.prompt_updated_at)


def serialize_response_ai_draft(
    draft: ConversationMessage | None, mailbox: Mailbox
) -> dict[str, Any] | None:
    if draft is None or not draft.response_to_id:
        return None
    return {
        "id": draft.id,
        "responseToId": draft.response_to_id,
        "body": draft.body,
        "isStale": is_ai_draft_stale(draft, mailbox),
    }


def create_tool_event(
    db: Session,
    conversation_id: int,
    tool: Tool,
    parameters: dict[str, Any],
    user_message: str,
    data: Any = None,
    error: Any = None,
    user_id: str | None = None,
) -> ConversationMessage:
    """Persist the audit record of one tool invocation.

    The tool identity is snapshotted into the message metadata so the record
    stays self-contained if the Tool definition later changes.

    Args:
        db: Database session.
        conversation_id: Conversation the tool ran for.
        tool: Tool that was invoked.
        parameters: Parameters used for the call.
        user_message: Human-readable summary stored as the message body.
        data: Result payload on success.
        error: Error payload on failure.
        user_id: Staff member who ran the tool, if not the assistant.

    Returns:
        The created tool message.
    """
    message = ConversationMessage(
        conversation_id=conversation_id,
        role=MessageRole.tool.value,
        status=MessageStatus.sent.value,
        body=user_message,
        cleaned_up_text=user_message,
        user_id=user_id,
        metadata_json={
            "tool": {
                "id": tool.id,
                "slug": tool.slug,
                "name": tool.name,
                "description": tool.description,
                "url": tool.url,
                "requestMethod": tool.request_method,
            },
            "result": data if data is not None else error,
            "success": not error,
            "parameters": parameters,
        },
        is_perfect=False,
        is_pinned=False,
        is_flagged_as_bad=False,
    )
    db.add(message)
    db.commit()
    return message


def create_reply(
    db: Session,
    conversation_id: int,
    message: str | None,
    user_id: str | None,
    close: bool = True,
    role: str | None = None,
    response_to_id: int | None = None,
    should_auto_assign: bool = True,
) -> int:
    """Record a staff reply and settle the conversation around it.

    In one transaction: auto-assign an unowned conversation to the replying
    staff member, insert the queued reply, close the conversation unless it
    is spam, mark the reply perfect when it matches the last AI draft, and
    discard all live AI drafts.

    Args:
        db: Database session.
        conversation_id: Conversation being answered.
        message: Reply body.
        user_id: Staff member sending the reply.
        close: Close the conversation after replying.
        role: Message role, staff by default.
        response_to_id: Message being answered.
        should_auto_assign: Assign an unowned conversation to user_id.

    Returns:
        Id of the created reply message.
    """
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation", str(conversation_id))

    try:
        if should_auto_assign and user_id and not conversation.assigned_to_id:
            update_conversation(
                db,
                conversation_id,
                {"assigned_to_id": user_id, "assigned_to_ai": False},
                commit=False,
            )

        reply = create_conversation_message(
            db,
            conversation_id=conversation_id,
            role=role or MessageRole.staff.value,
            status=MessageStatus.queueing.value,
            body=message,
            user_id=user_id,
            response_to_id=response_to_id,
            commit=False,
        )

        if close and conversation.status != ConversationStatus.spam.value:
            update_conversation(
                db,
                conversation_id,
                {"status": ConversationStatus.closed.value},
                by_user_id=user_id,
                commit=False,
            )

        last_draft = get_last_ai_generated_draft(db, conversation_id)
        if last_draft is not None and last_draft.body and message:
            if cleanup_message(last_draft.body) == cleanup_message(message):
                reply.is_perfect = True

        discard_ai_generated_drafts(db, conversation_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    return reply.id
