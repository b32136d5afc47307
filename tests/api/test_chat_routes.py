"""Tests for the chat widget streaming endpoint."""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient
from sqlalchemy import select

from helpdesk.db.models import ConversationMessage
from helpdesk.orchestrator.chat import HANDOFF_TEXT
from tests.helpers import ScriptedModel, parse_sse, text_step

STAFF_KEY = "s" * 40


def _url(conversation) -> str:
    return f"/api/chat/conversation/{conversation.slug}"


def test_preflight_allows_any_origin(client: TestClient):
    response = client.options("/api/chat/conversation/abc")

    assert response.status_code == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"


def test_unknown_conversation_is_404(client: TestClient, mailbox):
    response = client.post("/api/chat/conversation/nope", json={"message": {"content": "Hi"}})

    assert response.status_code == 404
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "error" in response.json()


def test_other_customers_conversation_is_403(client: TestClient, mailbox, make_conversation):
    conversation = make_conversation(email_from="jane@example.com")

    response = client.post(
        _url(conversation),
        json={"message": {"content": "Hi"}, "email": "bob@example.com"},
    )

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized"}


def test_identified_conversation_rejects_anonymous(client: TestClient, mailbox, make_conversation):
    conversation = make_conversation(email_from="jane@example.com")

    response = client.post(_url(conversation), json={"message": {"content": "Hi"}})

    assert response.status_code == 403


def test_malformed_attachment_is_400(client: TestClient, db_session, mailbox, make_conversation):
    conversation = make_conversation()

    response = client.post(
        _url(conversation),
        json={
            "message": {
                "content": "See attached",
                "experimental_attachments": [{"name": "photo.png", "url": "not-a-data-url"}],
            }
        },
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Attachment photo.png has invalid URL format"}
    assert db_session.scalars(select(ConversationMessage)).all() == []


def test_invalid_email_is_422(client: TestClient, mailbox, make_conversation):
    conversation = make_conversation()

    response = client.post(_url(conversation), json={"message": {"content": "Hi"}, "email": "nope"})

    assert response.status_code == 422


def test_human_conversation_streams_handoff(client: TestClient, db_session, mailbox, make_conversation):
    conversation = make_conversation(assigned_to_ai=False)

    response = client.post(_url(conversation), json={"message": {"content": "I need a person"}})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    parts = parse_sse(response.text)
    assert parts[0] == {"event": "text", "data": HANDOFF_TEXT}

    db_session.expire_all()
    messages = db_session.scalars(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation.id)
        .order_by(ConversationMessage.id)
    ).all()
    assert [m.role for m in messages] == ["user", "ai_assistant"]
    assert parts[1] == {"event": "annotation", "data": {"id": str(messages[1].id)}}
    assert db_session.get(type(conversation), conversation.id).subject == "I need a person"


def test_generated_answer_with_staff_prompt_info(
    client: TestClient, db_session, mailbox, make_conversation, monkeypatch
):
    monkeypatch.setenv("HELPDESK_API_KEY", STAFF_KEY)
    conversation = make_conversation()
    model = ScriptedModel([text_step("Hello ", "there!")])

    with (
        patch("helpdesk.orchestrator.chat.AnthropicCompletionModel", return_value=model),
        patch(
            "helpdesk.services.retrieval.generate_embedding",
            new=AsyncMock(return_value=[1.0, 0.0, 0.0]),
        ),
    ):
        response = client.post(
            _url(conversation),
            json={"message": {"content": "Hi"}},
            headers={"X-API-Key": STAFF_KEY},
        )

    parts = parse_sse(response.text)
    assert "".join(p["data"] for p in parts if p["event"] == "text") == "Hello there!"
    annotations = [p["data"] for p in parts if p["event"] == "annotation"]
    assert "promptInfo" in annotations[0]
    assert parts[-1]["event"] == "finish"

    db_session.expire_all()
    [answer] = db_session.scalars(
        select(ConversationMessage).where(ConversationMessage.role == "ai_assistant")
    ).all()
    assert answer.body == "Hello there!"
    assert annotations[1]["id"] == str(answer.id)
    assert db_session.get(type(conversation), conversation.id).subject == "Hi"
