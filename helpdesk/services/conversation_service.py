"""Conversation state machine and persistence.

Every automated state change goes through update_conversation, which
applies the ownership rules, stamps closed_at, logs only the fields that
actually changed and enqueues the follow-up jobs. Merged conversations are
never mutated directly: update_original_conversation follows the merge
chain to its root first.
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.db.models import (
    Conversation,
    ConversationEvent,
    ConversationEventType,
    ConversationMessage,
    ConversationStatus,
    Mailbox,
    MessageRole,
    PlatformCustomer,
    utc_now,
)
from helpdesk.errors import MergeCycleError, NotFoundError
from helpdesk.services import job_dispatcher
from helpdesk.services.platform_customer_service import determine_vip_status

logger = logging.getLogger(__name__)

# Merge chains deeper than this are treated as corrupt
MAX_MERGE_DEPTH = 32

_LOGGED_FIELDS = ("status", "assigned_to_id", "assigned_to_ai")


def create_conversation(
    db: Session,
    email_from: str | None = None,
    subject: str | None = "Chat",
    is_prompt: bool = False,
    assigned_to_ai: bool = False,
    commit: bool = True,
) -> Conversation:
    """Create a new open conversation.

    Args:
        db: Database session.
        email_from: Customer email, None for anonymous visitors.
        subject: Conversation subject.
        is_prompt: Whether this is a canned first-touch conversation.
        assigned_to_ai: Whether the AI assistant handles replies.
        commit: Commit immediately.

    Returns:
        The created Conversation.
    """
    conversation = Conversation(
        email_from=email_from,
        subject=subject,
        is_prompt=is_prompt,
        assigned_to_ai=assigned_to_ai,
        status=ConversationStatus.open.value,
    )
    db.add(conversation)
    if commit:
        db.commit()
    else:
        db.flush()
    return conversation


def get_conversation(db: Session, conversation_id: int) -> Conversation:
    """Load a conversation by id or raise NotFoundError."""
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation", str(conversation_id))
    return conversation


def get_mailbox(db: Session) -> Mailbox:
    """Return the mailbox this deployment serves."""
    mailbox = db.scalars(select(Mailbox).order_by(Mailbox.id).limit(1)).first()
    if mailbox is None:
        raise NotFoundError("Mailbox", "default")
    return mailbox


def get_conversation_by_slug(db: Session, slug: str) -> Conversation:
    """Load a conversation by its public slug or raise NotFoundError."""
    conversation = db.scalars(
        select(Conversation).where(Conversation.slug == slug)
    ).first()
    if conversation is None:
        raise NotFoundError("Conversation", slug)
    return conversation


def resolve_root_conversation_id(db: Session, conversation_id: int) -> int:
    """Follow merged_into_id links to the conversation shown to staff.

    Args:
        db: Database session.
        conversation_id: Any conversation in the merge chain.

    Returns:
        Id of the root conversation (the one with no merged_into_id).

    Raises:
        NotFoundError: If a conversation in the chain does not exist.
        MergeCycleError: If the chain revisits a conversation or exceeds
            MAX_MERGE_DEPTH links.
    """
    chain = [conversation_id]
    current_id = conversation_id
    while True:
        merged_into_id = db.scalars(
            select(Conversation.merged_into_id).where(Conversation.id == current_id)
        ).first()
        if merged_into_id is None:
            if db.get(Conversation, current_id) is None:
                raise NotFoundError("Conversation", str(current_id))
            return current_id
        if merged_into_id in chain or len(chain) > MAX_MERGE_DEPTH:
            chain.append(merged_into_id)
            logger.error(
                "Merge chain cycle detected for conversation %s: %s",
                conversation_id,
                chain,
            )
            raise MergeCycleError(conversation_id, chain)
        chain.append(merged_into_id)
        current_id = merged_into_id


def update_conversation(
    db: Session,
    conversation_id: int,
    updates: dict[str, Any] | None = None,
    by_user_id: str | None = None,
    message: str | None = None,
    event_type: str = ConversationEventType.update.value,
    skip_realtime_events: bool = False,
    commit: bool = True,
) -> Conversation:
    """Apply a state change to a conversation.

    Rules:
    - assigned_to_ai=True closes the conversation and clears the human owner.
    - Setting assigned_to_id hands the conversation to that human and turns
      off AI assignment.
    - Moving into 'closed' stamps closed_at.

    A ConversationEvent is recorded only when status, assigned_to_id or
    assigned_to_ai actually changed. Turning on AI assignment while the
    latest message is from the customer enqueues an auto-response job;
    closing enqueues an embedding job.

    Args:
        db: Database session.
        conversation_id: Conversation to update (not redirected).
        updates: Column values to set.
        by_user_id: Staff member responsible for the change, if any.
        message: Optional reason stored on the event.
        event_type: ConversationEvent type.
        skip_realtime_events: Suppress the change notification log line.
        commit: Commit at the end instead of leaving it to the caller.

    Returns:
        The updated Conversation.
    """
    conversation = get_conversation(db, conversation_id)
    updates = dict(updates or {})

    if updates.get("assigned_to_ai"):
        updates["status"] = ConversationStatus.closed.value
        updates["assigned_to_id"] = None
    elif updates.get("assigned_to_id"):
        updates["assigned_to_ai"] = False

    previous = {field: getattr(conversation, field) for field in _LOGGED_FIELDS}
    if (
        previous["status"] != ConversationStatus.closed.value
        and updates.get("status") == ConversationStatus.closed.value
    ):
        updates["closed_at"] = utc_now()

    for key, value in updates.items():
        if not hasattr(Conversation, key):
            raise ValueError(f"Unknown conversation field: {key}")
        setattr(conversation, key, value)
    db.flush()

    changes = {
        field: getattr(conversation, field)
        for field in _LOGGED_FIELDS
        if previous[field] != getattr(conversation, field)
    }
    if changes:
        db.add(
            ConversationEvent(
                conversation_id=conversation.id,
                type=event_type or ConversationEventType.update.value,
                changes=changes,
                by_user_id=by_user_id,
                reason=message,
            )
        )

    if not previous["assigned_to_ai"] and conversation.assigned_to_ai:
        latest = db.scalars(
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation.id)
            .order_by(ConversationMessage.created_at.desc(), ConversationMessage.id.desc())
            .limit(1)
        ).first()
        if latest is not None and latest.role == MessageRole.user.value:
            job_dispatcher.trigger_event(
                db, job_dispatcher.AUTO_RESPONSE_CREATE, {"messageId": latest.id}
            )

    if (
        previous["status"] != ConversationStatus.closed.value
        and conversation.status == ConversationStatus.closed.value
    ):
        job_dispatcher.trigger_event(
            db, job_dispatcher.EMBEDDING_CREATE, {"conversationSlug": conversation.slug}
        )

    if changes and not skip_realtime_events:
        logger.info(
            "conversation_updated id=%s changes=%s by=%s",
            conversation.id,
            changes,
            by_user_id,
        )

    if commit:
        db.commit()
    else:
        db.flush()
    return conversation


def update_original_conversation(
    db: Session, conversation_id: int, **kwargs: Any
) -> Conversation:
    """Update the root of the merge chain instead of a merged conversation.

    Accepts the same keyword arguments as update_conversation.
    """
    root_id = resolve_root_conversation_id(db, conversation_id)
    if root_id != conversation_id:
        logger.debug(
            "Redirecting update of merged conversation %s to %s",
            conversation_id,
            root_id,
        )
    return update_conversation(db, root_id, **kwargs)


def serialize_conversation(
    mailbox: Mailbox,
    conversation: Conversation,
    platform_customer: PlatformCustomer | None = None,
) -> dict[str, Any]:
    """Serialize a conversation for API responses."""
    customer = None
    if platform_customer is not None:
        customer = {
            "email": platform_customer.email,
            "name": platform_customer.name,
            "value": platform_customer.value,
            "links": platform_customer.links,
            "isVip": determine_vip_status(
                platform_customer.value, mailbox.vip_threshold
            ),
        }
    return {
        "id": conversation.id,
        "slug": conversation.slug,
        "status": conversation.status,
        "emailFrom": conversation.email_from,
        "subject": conversation.subject or "(no subject)",
        "assignedToId": conversation.assigned_to_id,
        "assignedToAI": conversation.assigned_to_ai,
        "isPrompt": conversation.is_prompt,
        "mergedIntoId": conversation.merged_into_id,
        "summary": conversation.summary,
        "embeddingText": conversation.embedding_text,
        "closedAt": conversation.closed_at.isoformat() if conversation.closed_at else None,
        "createdAt": conversation.created_at.isoformat() if conversation.created_at else None,
        "platformCustomer": customer,
    }
