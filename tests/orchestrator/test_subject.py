"""Tests for conversation subject generation."""

from unittest.mock import AsyncMock, patch

from helpdesk.orchestrator.messages import ChatMessage
from helpdesk.orchestrator.subject import SUBJECT_SYSTEM_PROMPT, generate_conversation_subject


async def test_single_short_message_used_verbatim(db_session, mailbox, make_conversation):
    conversation = make_conversation()

    with patch("helpdesk.orchestrator.subject.run_ai_query", new=AsyncMock()) as query:
        subject = await generate_conversation_subject(
            db_session, conversation.id, [ChatMessage(id="1", role="user", content="Refund status")], mailbox
        )

    assert subject == "Refund status"
    assert conversation.subject == "Refund status"
    query.assert_not_awaited()


async def test_long_or_multiple_messages_use_model(db_session, mailbox, make_conversation):
    conversation = make_conversation()
    messages = [
        ChatMessage(id="1", role="user", content="Hi"),
        ChatMessage(id="2", role="assistant", content="Hello!"),
        ChatMessage(id="3", role="user", content="My order never arrived"),
    ]

    with patch(
        "helpdesk.orchestrator.subject.run_ai_query",
        new=AsyncMock(return_value="  Missing order  \n"),
    ) as query:
        subject = await generate_conversation_subject(db_session, conversation.id, messages, mailbox)

    assert subject == "Missing order"
    assert conversation.subject == "Missing order"
    kwargs = query.await_args.kwargs
    assert kwargs["system"] == SUBJECT_SYSTEM_PROMPT
    assert kwargs["messages"] == [
        {"role": "user", "content": "Hi"},
        {"role": "user", "content": "My order never arrived"},
    ]
