"""SQLAlchemy ORM models for the helpdesk state database.

This module defines the records the AI response pipeline reads and writes:
mailboxes, conversations and their messages, conversation events, declared
tools, platform customers, retrieval sources, AI usage events and the
outbox of deferred jobs. Uses SQLAlchemy 2.0 style with Mapped and
mapped_column.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_slug() -> str:
    """Generate a random URL-safe conversation slug."""
    return uuid4().hex


def utc_now() -> datetime:
    """Return the current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# Enums matching the database schema constraints


class ConversationStatus(str, Enum):
    """Status values for conversations."""

    open = "open"
    closed = "closed"
    spam = "spam"


class MessageRole(str, Enum):
    """Author of a conversation message."""

    user = "user"
    staff = "staff"
    ai_assistant = "ai_assistant"
    tool = "tool"


class MessageStatus(str, Enum):
    """Delivery status of a conversation message.

    Lifecycle: draft -> discarded (superseded or human reply sent)
               queueing -> sent/failed
    """

    draft = "draft"
    queueing = "queueing"
    sent = "sent"
    discarded = "discarded"
    failed = "failed"


DRAFT_STATUSES = (MessageStatus.draft.value, MessageStatus.discarded.value)


class ConversationEventType(str, Enum):
    """Categories of conversation state-change events."""

    update = "update"
    request_human_support = "request_human_support"
    resolved_by_ai = "resolved_by_ai"


class ParameterLocation(str, Enum):
    """Where a tool parameter is sent in the outgoing HTTP request."""

    query = "query"
    path = "path"
    body = "body"


class ScheduledJobStatus(str, Enum):
    """Status values for outbox job rows."""

    pending = "pending"
    dispatched = "dispatched"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Mailbox(Base):
    """Support mailbox configuration consumed by the AI pipeline.

    Attributes:
        id: Integer primary key.
        name: Display name substituted into the chat system prompt.
        slug: URL-safe identifier.
        vip_threshold: Customer value (in dollars) at or above which a
            platform customer counts as VIP. None disables VIP detection.
        prompt_updated_at: AI drafts created before this are stale.
        metadata_endpoint_url: Optional customer metadata API endpoint.
        metadata_hmac_secret: Shared secret used to sign metadata requests.
    """

    __tablename__ = "mailboxes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    vip_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prompt_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    metadata_endpoint_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_hmac_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return f"<Mailbox(id={self.id!r}, slug={self.slug!r})>"


class Conversation(Base):
    """Customer conversation.

    A conversation with merged_into_id set is never shown as current; all
    automated state changes are redirected to the root of the merge chain.

    Attributes:
        id: Integer primary key.
        slug: Public identifier used by the chat widget.
        status: open, closed or spam.
        email_from: Customer email, None for anonymous visitors.
        assigned_to_id: Human owner, if any.
        assigned_to_ai: Whether the AI assistant currently handles replies.
        is_prompt: Canned first-touch conversation eligible for caching.
        merged_into_id: Conversation this one was merged into.
        embedding_text: Text the stored embedding was computed from.
        embedding: Embedding vector (JSON list of floats).
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_merged_into", "merged_into_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, default=generate_slug
    )
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationStatus.open.value
    )
    email_from: Mapped[str | None] = mapped_column(String(320), nullable=True)
    assigned_to_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_to_ai: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    is_prompt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merged_into_id: Mapped[int | None] = mapped_column(
        ForeignKey("conversations.id"), nullable=True
    )
    embedding_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    summary: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_user_email_created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    messages: Mapped[list["ConversationMessage"]] = relationship(
        "ConversationMessage",
        back_populates="conversation",
        order_by="ConversationMessage.id",
    )

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id!r}, slug={self.slug!r}, "
            f"status={self.status!r}, assigned_to_ai={self.assigned_to_ai!r})>"
        )


class ConversationMessage(Base):
    """A single turn in a conversation.

    Attributes:
        conversation_id: Parent conversation.
        role: user, staff, ai_assistant or tool.
        status: draft, queueing, sent, discarded or failed.
        response_to_id: Message this one answers.
        body: Rendered body (HTML for drafts and email replies).
        cleaned_up_text: Plain-text body used for prompts.
        metadata_json: Role-specific metadata (tool invocation record,
            reasoning text, trace id, human handoff flag).
        prompt_info_json: Prompt details for AI drafts.
    """

    __tablename__ = "conversation_messages"
    __table_args__ = (
        Index("ix_convmsg_conversation_created", "conversation_id", "created_at"),
        Index("ix_convmsg_role_status", "conversation_id", "role", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    response_to_id: Mapped[int | None] = mapped_column(
        ForeignKey("conversation_messages.id"), nullable=True
    )
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    cleaned_up_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_from: Mapped[str | None] = mapped_column(String(320), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_perfect: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_flagged_as_bad: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    prompt_info_json: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    conversation: Mapped[Conversation] = relationship(
        "Conversation", back_populates="messages"
    )

    def __repr__(self) -> str:
        return (
            f"<ConversationMessage(id={self.id!r}, role={self.role!r}, "
            f"status={self.status!r})>"
        )


class ConversationEvent(Base):
    """Audit record of a conversation state change.

    Only the fields that actually changed are recorded in ``changes``.
    """

    __tablename__ = "conversation_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(
        String(40), nullable=False, default=ConversationEventType.update.value
    )
    changes: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    by_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class Tool(Base):
    """Declarative REST action the assistant may call.

    Referenced, never mutated, by the orchestration core.

    Attributes:
        slug: Tool name exposed to the model.
        url: Endpoint URL, may contain ``{param}`` placeholders.
        request_method: HTTP method.
        headers: Static request headers.
        authentication_method: 'none' or 'bearer_token'.
        parameters: List of {name, in, type, required, description}.
        customer_email_parameter: Parameter auto-filled with the customer email.
    """

    __tablename__ = "tools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(Text, nullable=False)
    request_method: Mapped[str] = mapped_column(
        String(10), nullable=False, default="GET"
    )
    headers: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    authentication_method: Mapped[str] = mapped_column(
        String(20), nullable=False, default="none"
    )
    authentication_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    parameters: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON, nullable=True
    )
    customer_email_parameter: Mapped[str | None] = mapped_column(
        String(255), nullable=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    available_in_chat: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    def __repr__(self) -> str:
        return f"<Tool(slug={self.slug!r}, method={self.request_method!r})>"


class PlatformCustomer(Base):
    """Customer record keyed by email.

    ``value`` is a monetary amount stored as integer cents.
    """

    __tablename__ = "platform_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    links: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    customer_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class AIUsageEvent(Base):
    """Append-only record of one model call's token usage and cost."""

    __tablename__ = "ai_usage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mailbox_id: Mapped[int | None] = mapped_column(
        ForeignKey("mailboxes.id"), nullable=True
    )
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    query_type: Mapped[str] = mapped_column(String(64), nullable=False)
    input_tokens_count: Mapped[int] = mapped_column(Integer, nullable=False)
    output_tokens_count: Mapped[int] = mapped_column(Integer, nullable=False)
    cached_tokens_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 7), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class KnowledgeBankEntry(Base):
    """Curated knowledge bank snippet (small closed set, always included)."""

    __tablename__ = "knowledge_bank_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class WebsitePage(Base):
    """Crawled website page with its embedding."""

    __tablename__ = "website_pages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    page_title: Mapped[str] = mapped_column(Text, nullable=False)
    markdown: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ScheduledJob(Base):
    """Durable outbox row for a deferred job handed to the external dispatcher.

    Attributes:
        name: Event name, e.g. 'conversations/check-resolution'.
        payload: JSON payload for the job.
        run_at: Earliest time the dispatcher may run the job.
        status: pending until the dispatcher picks it up.
    """

    __tablename__ = "scheduled_jobs"
    __table_args__ = (
        Index("ix_scheduled_jobs_status_run_at", "status", "run_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ScheduledJobStatus.pending.value
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return f"<ScheduledJob(id={self.id!r}, name={self.name!r}, status={self.status!r})>"
