"""Pytest fixtures for API tests.

Provides a test client wired to the in-memory database from the root
conftest, for both request-scoped and streaming routes.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

from helpdesk.api.main import app
from helpdesk.api.routes.chat import get_session_factory
from helpdesk.db.connection import get_db


@pytest.fixture(autouse=True)
def _reset_sse_exit_event():
    # The exit event binds to the first event loop that used it
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


@pytest.fixture
def client(session_factory, monkeypatch) -> Generator[TestClient, None, None]:
    """Create a TestClient using the test database.

    Startup hooks are skipped so the application's own engine is never
    touched.
    """
    monkeypatch.delenv("HELPDESK_API_KEY", raising=False)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()

