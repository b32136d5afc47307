"""Test helper utilities for the AI response pipeline."""

from tests.helpers.models import ScriptedModel, collect_parts, text_step, tool_step
from tests.helpers.reasoning import FakeReasoningStream, reasoning_client
from tests.helpers.sse import parse_sse

__all__ = [
    "FakeReasoningStream",
    "ScriptedModel",
    "collect_parts",
    "parse_sse",
    "reasoning_client",
    "text_step",
    "tool_step",
]
