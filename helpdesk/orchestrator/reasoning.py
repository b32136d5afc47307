"""Reasoning pass run before the chat completion.

A reasoning model (DeepSeek R1 by default) thinks about the question with
the tool catalogue in view. Its <think>...</think> section is streamed to
the widget as it arrives and, once complete, appended to the completion
prompt as a system message. Text after </think> is discarded.

Failures never block the answer: the pass returns no reasoning instead.
"""

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass

from openai import AsyncOpenAI

from helpdesk.orchestrator.config import get_reasoning_model
from helpdesk.orchestrator.messages import ChatMessage, has_image_parts, to_openai_messages
from helpdesk.orchestrator.models import get_reasoning_client
from helpdesk.orchestrator.prompts import (
    REASONING_INSTRUCTIONS,
    REASONING_NO_SCREENSHOT_NOTE,
    REASONING_TOOLS_PROMPT,
)
from helpdesk.orchestrator.stream import DataStreamWriter
from helpdesk.orchestrator.tools import ToolDefinition
from helpdesk.services.usage_tracker import TokenUsage

logger = logging.getLogger(__name__)

REASONING_TEMPERATURE = 0.6
REASONING_TIMEOUT_SECONDS = 30
EVALUATION_REASONING_TIMEOUT_SECONDS = 50

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"
_THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL)


@dataclass
class ReasoningResult:
    reasoning: str | None = None
    usage: TokenUsage | None = None


def extract_reasoning(text: str) -> str | None:
    """Return the stripped content of the first <think> block, if any."""
    match = _THINK_PATTERN.search(text)
    return match.group(1).strip() if match else None


class ThinkTagScanner:
    """Incremental scanner for the <think> section of a token stream.

    States move before -> inside -> after. feed() returns the events the
    token completes: ('reasoning', text) for content inside the tags and
    ('finished', None) when the closing tag arrives. Tags may be split
    across tokens; text outside the tags produces no events.
    """

    def __init__(self) -> None:
        self.state = "before"
        self._buffer = ""

    def feed(self, token: str) -> list[tuple[str, str | None]]:
        events: list[tuple[str, str | None]] = []
        self._buffer += token

        while True:
            if self.state == "before":
                index = self._buffer.find(OPEN_TAG)
                if index == -1:
                    keep = _partial_tag_length(self._buffer, OPEN_TAG)
                    self._buffer = self._buffer[len(self._buffer) - keep:]
                    return events
                self._buffer = self._buffer[index + len(OPEN_TAG):]
                self.state = "inside"

            elif self.state == "inside":
                index = self._buffer.find(CLOSE_TAG)
                if index == -1:
                    keep = _partial_tag_length(self._buffer, CLOSE_TAG)
                    text = self._buffer[: len(self._buffer) - keep]
                    self._buffer = self._buffer[len(self._buffer) - keep:]
                    if text:
                        events.append(("reasoning", text))
                    return events
                text = self._buffer[:index]
                if text:
                    events.append(("reasoning", text))
                self._buffer = ""
                self.state = "after"
                events.append(("finished", None))
                return events

            else:
                self._buffer = ""
                return events


def _partial_tag_length(buffer: str, tag: str) -> int:
    """Length of the longest buffer suffix that is a proper prefix of tag."""
    for size in range(min(len(buffer), len(tag) - 1), 0, -1):
        if tag.startswith(buffer[-size:]):
            return size
    return 0


def build_reasoning_system_messages(
    tools: dict[str, ToolDefinition],
    has_screenshot: bool,
) -> list[str]:
    tool_lines = "\n".join(tool.describe_for_reasoning() for tool in tools.values())
    messages = [
        REASONING_TOOLS_PROMPT.format(tools=tool_lines),
        REASONING_INSTRUCTIONS,
    ]
    if has_screenshot:
        messages.append(REASONING_NO_SCREENSHOT_NOTE)
    return messages


async def generate_reasoning(
    tools: dict[str, ToolDefinition],
    system_prompt: str,
    messages: list[ChatMessage],
    email: str | None,
    conversation_id: int,
    trace_id: str | None = None,
    evaluation: bool = False,
    data_stream: DataStreamWriter | None = None,
    client: AsyncOpenAI | None = None,
) -> ReasoningResult:
    """Run the reasoning model and stream its thinking to the widget.

    Args:
        tools: Tools available to the completion, listed for the model.
        system_prompt: Completion system prompt.
        messages: Conversation history including the new user message.
        email: Customer email, for provider-side attribution.
        conversation_id: Conversation being answered.
        trace_id: Id reported on reasoningStarted/reasoningFinished.
        evaluation: Use the longer timeout and re-raise failures.
        data_stream: Writer receiving reasoning events.
        client: Optional OpenAI-compatible client.

    Returns:
        ReasoningResult with the extracted reasoning and token usage, or an
        empty result when the pass failed.
    """
    event_id = trace_id or str(uuid.uuid4())
    system_messages = [system_prompt] + build_reasoning_system_messages(
        tools, has_image_parts(messages)
    )
    request_messages = to_openai_messages(system_messages, messages)
    timeout = EVALUATION_REASONING_TIMEOUT_SECONDS if evaluation else REASONING_TIMEOUT_SECONDS

    try:
        start = time.monotonic()
        text = ""
        usage: TokenUsage | None = None
        scanner = ThinkTagScanner()

        async with asyncio.timeout(timeout):
            stream = await (client or get_reasoning_client()).chat.completions.create(
                model=get_reasoning_model(),
                messages=request_messages,
                temperature=REASONING_TEMPERATURE,
                stream=True,
                stream_options={"include_usage": True},
                user=email or "anonymous",
            )

            async with stream:
                if data_stream is not None:
                    data_stream.write_data({"event": "reasoningStarted", "data": {"id": event_id}})

                async for chunk in stream:
                    if chunk.usage is not None:
                        usage = TokenUsage(
                            prompt_tokens=chunk.usage.prompt_tokens or 0,
                            completion_tokens=chunk.usage.completion_tokens or 0,
                        )
                    if not chunk.choices:
                        continue
                    token = chunk.choices[0].delta.content or ""
                    if not token:
                        continue
                    text += token
                    for kind, value in scanner.feed(token):
                        if data_stream is None:
                            continue
                        if kind == "reasoning":
                            data_stream.write_data({"reasoning": value})
                        else:
                            data_stream.write_data(
                                {"event": "reasoningFinished", "data": {"id": event_id}}
                            )

        reasoning = extract_reasoning(text)
        if data_stream is not None:
            data_stream.write_message_annotation(
                {
                    "reasoning": {
                        "message": reasoning,
                        "reasoningTimeSeconds": round(time.monotonic() - start),
                    }
                }
            )
        logger.info(
            "reasoning_complete conversation=%s chars=%d elapsed=%.1fs",
            conversation_id,
            len(reasoning or ""),
            time.monotonic() - start,
        )
        return ReasoningResult(reasoning=reasoning, usage=usage)
    except Exception:
        if evaluation:
            raise
        logger.warning("Reasoning pass failed for conversation %s", conversation_id, exc_info=True)
        return ReasoningResult()


def reasoning_system_message(reasoning: str) -> str:
    return f"Reasoning: {reasoning}"