"""Multi-step tool-calling completion loop.

Each step streams one model turn. When the model stops to call tools that
run on the server, their results are fed back and another step starts, up
to MAX_STEPS. A call to a tool without a server handler (guide, read-page
and client-supplied tools) ends the loop so the widget can run it.

The loop yields StreamParts as they happen; the accumulated outcome is read
from CompletionRun.result once the stream is exhausted.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from pydantic import ValidationError as PydanticValidationError

from helpdesk.orchestrator.messages import ChatMessage, to_anthropic_messages
from helpdesk.orchestrator.models import CompletionModel, StepFinish, TextDelta, ToolCall
from helpdesk.orchestrator.stream import (
    FINISH,
    STEP_FINISH,
    TEXT_DELTA,
    TOOL_CALL,
    TOOL_RESULT,
    StreamPart,
)
from helpdesk.orchestrator.tools import ToolDefinition
from helpdesk.orchestrator.tools.core import tool_error
from helpdesk.services.usage_tracker import TokenUsage

logger = logging.getLogger(__name__)

MAX_STEPS = 4
COMPLETION_TEMPERATURE = 0.1


@dataclass
class CompletionStep:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str = "unknown"
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class CompletionResult:
    """Outcome of a completion run.

    Attributes:
        steps: Every model step, in order.
        text: Text of the final step.
        finish_reason: Finish reason of the final step.
        usage: Token usage summed over all steps.
    """

    steps: list[CompletionStep] = field(default_factory=list)
    text: str = ""
    finish_reason: str = "unknown"
    usage: TokenUsage = field(default_factory=TokenUsage)

    def called_tool(self, name: str) -> bool:
        return any(call.name == name for step in self.steps for call in step.tool_calls)

    def called_tool_matching(self, fragment: str) -> bool:
        return any(fragment in call.name for step in self.steps for call in step.tool_calls)


def _add_usage(total: TokenUsage, usage: TokenUsage) -> None:
    total.prompt_tokens += usage.prompt_tokens
    total.completion_tokens += usage.completion_tokens
    total.cached_tokens += usage.cached_tokens


async def execute_tool(tool: ToolDefinition, call: ToolCall) -> str:
    """Run one server-side tool call and return the result text.

    Invalid arguments and handler failures become an error result for the
    model instead of aborting the completion.
    """
    try:
        args = tool.parameters.validate(call.arguments)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(part) for part in first["loc"])
        return tool_error(f"Invalid arguments: {field_name} - {first['msg']}")

    try:
        result = await tool.handler(args)
    except Exception as e:
        logger.warning("tool_failed tool=%s error=%s", tool.name, e, exc_info=True)
        return tool_error(str(e) or type(e).__name__)
    return result if result is not None else ""


class CompletionRun:
    """One streamed completion with inline server-side tool execution.

    Usage:
        run = CompletionRun(model, system, messages, tools)
        async for part in run.stream():
            ...
        run.result.text
    """

    def __init__(
        self,
        model: CompletionModel,
        system: str,
        messages: list[ChatMessage],
        tools: dict[str, ToolDefinition],
        temperature: float = COMPLETION_TEMPERATURE,
        max_steps: int = MAX_STEPS,
    ) -> None:
        self.model = model
        self.system = system
        self.messages = messages
        self.tools = tools
        self.temperature = temperature
        self.max_steps = max_steps
        self.result = CompletionResult()

    async def stream(self) -> AsyncIterator[StreamPart]:
        turns = to_anthropic_messages(self.messages)
        tool_specs = [tool.to_anthropic() for tool in self.tools.values()]

        for step_number in range(1, self.max_steps + 1):
            step = CompletionStep()
            text_parts: list[str] = []

            async for event in self.model.stream(self.system, turns, tool_specs, self.temperature):
                if isinstance(event, TextDelta):
                    text_parts.append(event.text)
                    yield StreamPart(TEXT_DELTA, {"text": event.text})
                elif isinstance(event, ToolCall):
                    step.tool_calls.append(event)
                    yield StreamPart(
                        TOOL_CALL,
                        {"toolCallId": event.id, "toolName": event.name, "args": event.arguments},
                    )
                elif isinstance(event, StepFinish):
                    step.finish_reason = event.finish_reason
                    step.usage = event.usage

            step.text = "".join(text_parts)
            self.result.steps.append(step)
            _add_usage(self.result.usage, step.usage)

            has_client_call = False
            if step.finish_reason == "tool-calls":
                for call in step.tool_calls:
                    tool = self.tools.get(call.name)
                    if tool is None or not tool.runs_on_server:
                        has_client_call = True
                        continue
                    output = await execute_tool(tool, call)
                    step.tool_results.append({"toolCallId": call.id, "toolName": call.name, "result": output})
                    yield StreamPart(
                        TOOL_RESULT,
                        {"toolCallId": call.id, "toolName": call.name, "result": output},
                    )

            yield StreamPart(
                STEP_FINISH,
                {"finishReason": step.finish_reason, "step": step_number},
            )

            if (
                step.finish_reason != "tool-calls"
                or not step.tool_calls
                or has_client_call
                or step_number == self.max_steps
            ):
                break

            turns.append({"role": "assistant", "content": _assistant_blocks(step)})
            turns.append({"role": "user", "content": _tool_result_blocks(step)})

        last = self.result.steps[-1] if self.result.steps else CompletionStep()
        self.result.text = last.text
        self.result.finish_reason = last.finish_reason
        logger.info(
            "completion_finished steps=%d finish_reason=%s input=%d output=%d",
            len(self.result.steps),
            self.result.finish_reason,
            self.result.usage.prompt_tokens,
            self.result.usage.completion_tokens,
        )
        yield StreamPart(
            FINISH,
            {
                "finishReason": self.result.finish_reason,
                "usage": {
                    "promptTokens": self.result.usage.prompt_tokens,
                    "completionTokens": self.result.usage.completion_tokens,
                },
            },
        )


def _assistant_blocks(step: CompletionStep) -> list[dict[str, Any]]:
    blocks: list[dict[str, Any]] = []
    if step.text:
        blocks.append({"type": "text", "text": step.text})
    for call in step.tool_calls:
        blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
    return blocks


def _tool_result_blocks(step: CompletionStep) -> list[dict[str, Any]]:
    return [
        {
            "type": "tool_result",
            "tool_use_id": result["toolCallId"],
            "content": result["result"]
            if isinstance(result["result"], str)
            else json.dumps(result["result"]),
        }
        for result in step.tool_results
    ]
