"""Root-level pytest fixtures for all tests.

Provides:
- In-memory SQLite database sessions
- A fakeredis cache client installed for every test
- Mailbox, conversation and tool factories
"""

import os

# Must be set before helpdesk.db.connection creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("HELPDESK_ENV", "test")

from collections.abc import Generator
from typing import Any

import fakeredis
import fakeredis.aioredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from helpdesk.db.models import Base, Conversation, Mailbox, Tool
from helpdesk.services.response_cache import set_cache_client


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Cache Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def fake_cache():
    """Install a fresh fakeredis client as the response cache."""
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    set_cache_client(client)
    yield client
    set_cache_client(None)


# ============================================================================
# Data Factories
# ============================================================================


@pytest.fixture
def mailbox(db_session: Session) -> Mailbox:
    mailbox = Mailbox(name="Acme", slug="acme")
    db_session.add(mailbox)
    db_session.commit()
    return mailbox


@pytest.fixture
def make_conversation(db_session: Session):
    """Factory for conversations with sensible chat defaults."""

    def _make(**overrides: Any) -> Conversation:
        values = {"subject": "Chat", "status": "open", "assigned_to_ai": True}
        values.update(overrides)
        conversation = Conversation(**values)
        db_session.add(conversation)
        db_session.commit()
        return conversation

    return _make


@pytest.fixture
def make_tool(db_session: Session):
    """Factory for stored mailbox tools."""

    def _make(**overrides: Any) -> Tool:
        values = {
            "slug": "get_order",
            "name": "Get order",
            "description": "Look up an order",
            "url": "https://api.example.com/orders/{orderId}",
            "request_method": "GET",
            "parameters": [
                {"name": "orderId", "in": "path", "type": "string", "required": True},
            ],
        }
        values.update(overrides)
        tool = Tool(**values)
        db_session.add(tool)
        db_session.commit()
        return tool

    return _make
