"""Pytest fixtures for orchestrator tests."""

from unittest.mock import AsyncMock, patch

import pytest

from helpdesk.orchestrator.chat import create_user_message
from helpdesk.orchestrator.messages import ChatMessage


@pytest.fixture(autouse=True)
def query_embedding():
    """Embed every retrieval query as the same unit vector."""
    with patch(
        "helpdesk.services.retrieval.generate_embedding",
        new=AsyncMock(return_value=[1.0, 0.0, 0.0]),
    ) as mock:
        yield mock


@pytest.fixture(autouse=True)
def _no_completion_timeout(monkeypatch):
    monkeypatch.delenv("COMPLETION_TIMEOUT_SECONDS", raising=False)
    monkeypatch.setenv("HELPDESK_ENV", "test")


@pytest.fixture
def send_message(db_session):
    """Persist a widget message and return (row, ChatMessage)."""

    def _send(conversation, content: str, email: str | None = None):
        row = create_user_message(db_session, conversation.id, email, content, [])
        return row, ChatMessage(id=str(row.id), role="user", content=content)

    return _send
