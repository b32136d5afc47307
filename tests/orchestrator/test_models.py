"""Tests for model provider adapters."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from tenacity import wait_none

from helpdesk.db.models import AIUsageEvent
from helpdesk.orchestrator.models import (
    AnthropicCompletionModel,
    StepFinish,
    TextDelta,
    ToolCall,
    _create_message,
    check_token_count_and_summarize_if_needed,
    generate_embedding,
    map_finish_reason,
    run_ai_query,
    usage_from_anthropic,
)
from helpdesk.services.usage_tracker import TokenUsage


def _usage(input_tokens=10, output_tokens=5, cache_read=None, cache_creation=None):
    return SimpleNamespace(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_input_tokens=cache_read,
        cache_creation_input_tokens=cache_creation,
    )


class FakeMessageStream:
    """Async context manager mimicking client.messages.stream()."""

    def __init__(self, texts, final):
        self._texts = texts
        self._final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def __aiter__(self):
        for text in self._texts:
            yield SimpleNamespace(type="text", text=text)
        yield SimpleNamespace(type="message_stop")

    async def get_final_message(self):
        return self._final


@pytest.mark.parametrize(
    ("stop_reason", "expected"),
    [
        ("end_turn", "stop"),
        ("tool_use", "tool-calls"),
        ("max_tokens", "length"),
        ("refusal", "content-filter"),
        ("pause_turn", "other"),
        (None, "other"),
    ],
)
def test_map_finish_reason(stop_reason, expected):
    assert map_finish_reason(stop_reason) == expected


def test_usage_counts_cache_reads_as_input():
    assert usage_from_anthropic(_usage(100, 20, cache_read=300, cache_creation=50)) == TokenUsage(
        prompt_tokens=450, completion_tokens=20, cached_tokens=300
    )
    assert usage_from_anthropic(None) == TokenUsage()


async def test_anthropic_model_streams_text_then_tools():
    final = SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="Let me check."),
            SimpleNamespace(type="tool_use", id="toolu_1", name="get_order", input={"orderId": "A1"}),
        ],
        stop_reason="tool_use",
        usage=_usage(),
    )
    client = MagicMock()
    client.messages.stream = MagicMock(return_value=FakeMessageStream(["Let me ", "check."], final))
    model = AnthropicCompletionModel(client=client, model="claude-test")

    events = [event async for event in model.stream("sys", [{"role": "user", "content": "hi"}], [], 0.1)]

    assert events == [
        TextDelta("Let me "),
        TextDelta("check."),
        ToolCall(id="toolu_1", name="get_order", arguments={"orderId": "A1"}),
        StepFinish("tool-calls", TokenUsage(10, 5)),
    ]
    kwargs = client.messages.stream.call_args.kwargs
    assert kwargs["model"] == "claude-test"
    assert "tools" not in kwargs


class TestGenerateEmbedding:
    async def test_cached_per_normalized_text(self, fake_cache):
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2])])
        )

        first = await generate_embedding("refund\npolicy", client=client)
        second = await generate_embedding("refund policy", client=client)

        assert first == second == [0.1, 0.2]
        client.embeddings.create.assert_awaited_once()
        assert client.embeddings.create.await_args.kwargs["input"] == "refund policy"
        assert len(await fake_cache.keys("embedding:*")) == 1

    async def test_skip_cache(self, fake_cache):
        client = MagicMock()
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.5])])
        )

        await generate_embedding("hello", skip_cache=True, client=client)

        assert await fake_cache.keys("embedding:*") == []


class TestRunAiQuery:
    @pytest.fixture(autouse=True)
    def _no_retry_wait(self, monkeypatch):
        monkeypatch.setattr(
            "helpdesk.orchestrator.models._create_message",
            _create_message.retry_with(wait=wait_none()),
        )

    def _client(self, *results):
        client = MagicMock()
        client.messages.create = AsyncMock(side_effect=list(results))
        return client

    async def test_returns_text_and_tracks_usage(self, db_session, mailbox):
        client = self._client(
            SimpleNamespace(content=[SimpleNamespace(type="text", text="Refund question")], usage=_usage())
        )

        text = await run_ai_query(
            db_session,
            [{"role": "user", "content": "hi"}],
            "response_generator",
            mailbox=mailbox,
            system="Be brief",
            model="claude-test",
            client=client,
        )

        assert text == "Refund question"
        assert client.messages.create.await_args.kwargs["system"] == "Be brief"
        [event] = db_session.scalars(select(AIUsageEvent)).all()
        assert (event.query_type, event.model_name, event.mailbox_id) == (
            "response_generator",
            "claude-test",
            mailbox.id,
        )

    async def test_retries_transient_failures(self, db_session):
        client = self._client(
            RuntimeError("overloaded"),
            SimpleNamespace(content=[SimpleNamespace(type="text", text="ok")], usage=_usage()),
        )

        assert await run_ai_query(db_session, [], "response_generator", client=client) == "ok"
        assert client.messages.create.await_count == 2


class TestSummarizeIfNeeded:
    async def test_short_text_unchanged(self, db_session):
        client = MagicMock()

        assert await check_token_count_and_summarize_if_needed(db_session, "hi", client=client) == "hi"
        client.messages.create.assert_not_called()

    async def test_long_text_summarized(self, db_session, monkeypatch):
        monkeypatch.setattr("helpdesk.orchestrator.models.is_within_token_limit", lambda text: False)
        client = MagicMock()
        client.messages.create = AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(type="text", text="Short")], usage=_usage())
        )

        result = await check_token_count_and_summarize_if_needed(db_session, "x" * 100, client=client)

        assert result == "Short"
        event = db_session.scalars(select(AIUsageEvent)).one()
        assert event.query_type == "summarize_input"
