"""Database module for helpdesk state management and persistence."""

from helpdesk.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from helpdesk.db.models import (
    AIUsageEvent,
    Base,
    Conversation,
    ConversationEvent,
    ConversationEventType,
    ConversationMessage,
    ConversationStatus,
    KnowledgeBankEntry,
    Mailbox,
    MessageRole,
    MessageStatus,
    PlatformCustomer,
    ScheduledJob,
    Tool,
    WebsitePage,
)

__all__ = [
    # Models
    "Base",
    "Mailbox",
    "Conversation",
    "ConversationMessage",
    "ConversationEvent",
    "Tool",
    "PlatformCustomer",
    "AIUsageEvent",
    "KnowledgeBankEntry",
    "WebsitePage",
    "ScheduledJob",
    # Enums
    "ConversationStatus",
    "MessageRole",
    "MessageStatus",
    "ConversationEventType",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
