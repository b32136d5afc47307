"""Model provider clients for the AI response pipeline.

- Chat completions and drafts: Anthropic Messages API, streamed.
- Reasoning pass: any OpenAI-compatible endpoint (DeepSeek R1 on Fireworks).
- Embeddings: OpenAI embeddings API, cached in the key/value store.

CompletionModel is the seam the completion loop and tests depend on: it
streams one model step as TextDelta and ToolCall events followed by exactly
one StepFinish.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential_jitter

from helpdesk.db.models import Mailbox
from helpdesk.orchestrator.config import (
    get_completion_model,
    get_embedding_model,
    get_reasoning_api_key,
    get_reasoning_base_url,
)
from helpdesk.orchestrator.prompts import SUMMARY_PROMPT
from helpdesk.services.response_cache import CacheFor
from helpdesk.services.usage_tracker import TokenUsage, track_ai_usage_event

logger = logging.getLogger(__name__)

EMBEDDING_CACHE_TTL_SECONDS = 60 * 60 * 24 * 30
DEFAULT_MAX_TOKENS = 4096

# Anthropic stop_reason -> finish reason reported to the pipeline
_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool-calls",
    "max_tokens": "length",
    "refusal": "content-filter",
}

# Rough characters-per-token ratio for the long-input guard
_CHARS_PER_TOKEN = 4
COMPLETION_TOKEN_LIMIT = 128_000
SUMMARY_MAX_TOKENS = 7000


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class StepFinish:
    finish_reason: str
    usage: TokenUsage = field(default_factory=TokenUsage)


ModelEvent = TextDelta | ToolCall | StepFinish


class CompletionModel(Protocol):
    """A chat model that streams one step of a tool-calling conversation."""

    model_name: str

    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        temperature: float,
    ) -> AsyncIterator[ModelEvent]: ...


def map_finish_reason(stop_reason: str | None) -> str:
    return _FINISH_REASONS.get(stop_reason or "", "other")


def usage_from_anthropic(usage: Any) -> TokenUsage:
    """Convert an Anthropic usage block; cached reads count as input tokens."""
    if usage is None:
        return TokenUsage()
    cached = getattr(usage, "cache_read_input_tokens", None) or 0
    created = getattr(usage, "cache_creation_input_tokens", None) or 0
    return TokenUsage(
        prompt_tokens=(usage.input_tokens or 0) + cached + created,
        completion_tokens=usage.output_tokens or 0,
        cached_tokens=cached,
    )


class AnthropicCompletionModel:
    """Streams completions from the Anthropic Messages API.

    Args:
        client: Optional pre-configured AsyncAnthropic client.
        model: Model identifier, COMPLETION_MODEL by default.
        max_tokens: Output token cap per step.
    """

    def __init__(
        self,
        client: AsyncAnthropic | None = None,
        model: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._client = client
        self.model_name = model or get_completion_model()
        self.max_tokens = max_tokens

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic()
        return self._client

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        temperature: float,
    ) -> AsyncIterator[ModelEvent]:
        kwargs: dict[str, Any] = {
            "model": self.model_name,
            "system": system,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = tools

        async with self.client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "text":
                    yield TextDelta(event.text)
            final = await stream.get_final_message()

        for block in final.content:
            if block.type == "tool_use":
                yield ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
        yield StepFinish(
            finish_reason=map_finish_reason(final.stop_reason),
            usage=usage_from_anthropic(final.usage),
        )


_reasoning_client: AsyncOpenAI | None = None
_openai_client: AsyncOpenAI | None = None


def get_reasoning_client() -> AsyncOpenAI:
    """Shared OpenAI-compatible client for the reasoning provider.

    The client retries a failed request once.
    """
    global _reasoning_client
    if _reasoning_client is None:
        _reasoning_client = AsyncOpenAI(
            base_url=get_reasoning_base_url(),
            api_key=get_reasoning_api_key(),
            max_retries=1,
        )
    return _reasoning_client


def get_openai_client() -> AsyncOpenAI:
    global _openai_client
    if _openai_client is None:
        _openai_client = AsyncOpenAI()
    return _openai_client


async def close_model_clients() -> None:
    """Close the shared OpenAI clients and their connection pools."""
    global _reasoning_client, _openai_client
    for client in (_reasoning_client, _openai_client):
        if client is not None:
            await client.close()
    _reasoning_client = None
    _openai_client = None


async def generate_embedding(
    value: str,
    skip_cache: bool = False,
    client: AsyncOpenAI | None = None,
) -> list[float]:
    """Embed text, caching vectors for 30 days under embedding:<md5>.

    Newlines are collapsed to spaces before hashing and embedding.
    Provider errors propagate to the caller.
    """
    text = value.replace("\n", " ")
    cache = CacheFor[list[float]](f"embedding:{hashlib.md5(text.encode('utf-8')).hexdigest()}")

    if not skip_cache:
        cached = await cache.get()
        if cached:
            return cached

    response = await (client or get_openai_client()).embeddings.create(
        model=get_embedding_model(),
        input=text,
    )
    embedding = list(response.data[0].embedding)

    if not skip_cache:
        await cache.set(embedding, ttl_seconds=EMBEDDING_CACHE_TTL_SECONDS)
    return embedding


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(initial=1, exp_base=2, max=60),
    reraise=True,
)
async def _create_message(client: AsyncAnthropic, **kwargs: Any) -> Any:
    return await client.messages.create(**kwargs)


async def run_ai_query(
    db: Session,
    messages: list[dict[str, Any]],
    query_type: str,
    mailbox: Mailbox | None = None,
    system: str | None = None,
    model: str | None = None,
    temperature: float = 0.0,
    max_tokens: int = 500,
    client: AsyncAnthropic | None = None,
) -> str:
    """Run a tracked, non-streaming completion and return its text.

    The model call is retried up to 3 times with exponential jitter, and
    its token usage is recorded under query_type.

    Args:
        db: Database session for usage tracking.
        messages: Anthropic-format message list.
        query_type: Usage category recorded on the AIUsageEvent.
        mailbox: Mailbox the call is made for.
        system: Optional system prompt.
        model: Model identifier, COMPLETION_MODEL by default.
        temperature: Sampling temperature.
        max_tokens: Output token cap.
        client: Optional pre-configured AsyncAnthropic client.

    Returns:
        Concatenated text blocks of the response.
    """
    model_name = model or get_completion_model()
    kwargs: dict[str, Any] = {
        "model": model_name,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if system:
        kwargs["system"] = system

    response = await _create_message(client or AsyncAnthropic(), **kwargs)
    await track_ai_usage_event(
        db,
        model=model_name,
        query_type=query_type,
        usage=usage_from_anthropic(response.usage),
        mailbox=mailbox,
    )
    return "".join(block.text for block in response.content if block.type == "text")


def is_within_token_limit(text: str, max_tokens: int = COMPLETION_TOKEN_LIMIT) -> bool:
    return len(text) // _CHARS_PER_TOKEN <= max_tokens


async def check_token_count_and_summarize_if_needed(
    db: Session,
    text: str,
    mailbox: Mailbox | None = None,
    client: AsyncAnthropic | None = None,
) -> str:
    """Return text unchanged, or a model summary when it exceeds the context budget."""
    if is_within_token_limit(text):
        return text
    logger.info("Summarizing oversized input of %d characters", len(text))
    return await run_ai_query(
        db,
        messages=[{"role": "user", "content": text}],
        query_type="summarize_input",
        mailbox=mailbox,
        system=SUMMARY_PROMPT,
        max_tokens=SUMMARY_MAX_TOKENS,
        client=client,
    )
