"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from helpdesk.api.routes import chat, conversations

__all__ = [
    "chat",
    "conversations",
]
