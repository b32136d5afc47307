"""Model-callable tool definition shared by built-in, mailbox and client tools."""

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from helpdesk.orchestrator.tools.parameters import ParameterValidator

ToolHandler = Callable[[dict[str, Any]], Awaitable[str]]


@dataclass
class ToolDefinition:
    """A tool the chat model may call.

    Tools without a handler run in the widget: the completion loop stops
    and hands the call to the client.

    Attributes:
        name: Tool name exposed to the model.
        description: Tool description exposed to the model.
        parameters: Compiled parameter validator.
        handler: Server-side executor returning the result text.
    """

    name: str
    description: str
    parameters: ParameterValidator
    handler: ToolHandler | None = None

    @property
    def runs_on_server(self) -> bool:
        return self.handler is not None

    def to_anthropic(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters.json_schema(),
        }

    def describe_for_reasoning(self) -> str:
        """One-line summary: '<name>: <description> Params: k: desc, ...'."""
        params = ", ".join(f"{k}: {v}" for k, v in self.parameters.descriptions().items())
        return f"{self.name}: {self.description} Params: {params}"


def tool_error(message: str) -> str:
    return json.dumps({"success": False, "message": message})
