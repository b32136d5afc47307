"""Chat message model and conversions to provider message formats.

ChatMessage is the provider-neutral shape the pipeline works with. Stored
tool messages are loaded back as assistant turns carrying a completed tool
invocation, so the model sees what each tool returned earlier.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from helpdesk.db.models import MessageRole
from helpdesk.services.conversation_message_service import get_messages_only

logger = logging.getLogger(__name__)

# Anthropic requires the first turn to come from the user
CONTINUED_CONVERSATION_PLACEHOLDER = "(continuing an earlier conversation)"


@dataclass
class ChatMessage:
    """One turn of a chat conversation.

    Attributes:
        id: Message id as a string.
        role: 'user', 'assistant' or 'system'.
        content: Text content.
        tool_invocations: Completed tool calls made in this assistant turn,
            each {toolCallId, toolName, args, result}.
        attachments: Files attached to a user turn, each {name, contentType, url}.
    """

    id: str
    role: str
    content: str = ""
    tool_invocations: list[dict[str, Any]] = field(default_factory=list)
    attachments: list[dict[str, Any]] = field(default_factory=list)


def _image_attachments(message: ChatMessage) -> list[dict[str, Any]]:
    return [
        a for a in message.attachments
        if str(a.get("contentType", "")).startswith("image/") and a.get("url")
    ]


def has_image_parts(messages: list[ChatMessage]) -> bool:
    return any(m.role == "user" and _image_attachments(m) for m in messages)


def load_previous_messages(
    db: Session,
    conversation_id: int,
    latest_message_id: int | None = None,
) -> list[ChatMessage]:
    """Load a conversation's visible history as chat messages.

    Messages without a body and the message being answered are skipped.
    Staff and AI messages become assistant turns; tool messages become
    assistant turns with one completed tool invocation.
    """
    history: list[ChatMessage] = []
    for message in get_messages_only(db, conversation_id):
        if not message.body or message.id == latest_message_id:
            continue

        if message.role == MessageRole.tool.value:
            metadata = message.metadata_json or {}
            tool = metadata.get("tool") or {}
            history.append(
                ChatMessage(
                    id=str(message.id),
                    role="assistant",
                    tool_invocations=[
                        {
                            "toolCallId": f"tool_{message.id}",
                            "toolName": tool.get("slug", "tool"),
                            "args": metadata.get("parameters") or {},
                            "result": metadata.get("result"),
                        }
                    ],
                )
            )
            continue

        role = (
            "assistant"
            if message.role in (MessageRole.staff.value, MessageRole.ai_assistant.value)
            else message.role
        )
        history.append(ChatMessage(id=str(message.id), role=role, content=message.body))
    return history


def _append_turn(turns: list[dict[str, Any]], role: str, blocks: list[dict[str, Any]]) -> None:
    if not blocks:
        return
    if turns and turns[-1]["role"] == role:
        turns[-1]["content"].extend(blocks)
    else:
        turns.append({"role": role, "content": list(blocks)})


def _tool_result_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def to_anthropic_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert chat messages to Anthropic Messages API turns.

    System messages are left out; callers fold them into the system prompt.
    Consecutive turns with the same role are merged, and a placeholder user
    turn is prepended when the history starts with the assistant.
    """
    turns: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue

        if message.role == "user":
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for attachment in _image_attachments(message):
                blocks.append(
                    {"type": "image", "source": {"type": "url", "url": attachment["url"]}}
                )
            _append_turn(turns, "user", blocks)
            continue

        assistant_blocks: list[dict[str, Any]] = []
        if message.content:
            assistant_blocks.append({"type": "text", "text": message.content})
        results: list[dict[str, Any]] = []
        for invocation in message.tool_invocations:
            assistant_blocks.append(
                {
                    "type": "tool_use",
                    "id": invocation["toolCallId"],
                    "name": invocation["toolName"],
                    "input": invocation.get("args") or {},
                }
            )
            results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": invocation["toolCallId"],
                    "content": _tool_result_content(invocation.get("result")),
                }
            )
        _append_turn(turns, "assistant", assistant_blocks)
        _append_turn(turns, "user", results)

    if turns and turns[0]["role"] == "assistant":
        turns.insert(
            0,
            {"role": "user", "content": [{"type": "text", "text": CONTINUED_CONVERSATION_PLACEHOLDER}]},
        )
    return turns


def to_openai_messages(
    system_messages: list[str],
    messages: list[ChatMessage],
) -> list[dict[str, Any]]:
    """Convert to OpenAI chat format with image parts stripped from user turns."""
    converted: list[dict[str, Any]] = [
        {"role": "system", "content": content} for content in system_messages
    ]
    for message in messages:
        if message.role in ("user", "system"):
            converted.append({"role": message.role, "content": message.content})
            continue

        if not message.tool_invocations:
            converted.append({"role": "assistant", "content": message.content})
            continue

        converted.append(
            {
                "role": "assistant",
                "content": message.content or None,
                "tool_calls": [
                    {
                        "id": invocation["toolCallId"],
                        "type": "function",
                        "function": {
                            "name": invocation["toolName"],
                            "arguments": json.dumps(invocation.get("args") or {}),
                        },
                    }
                    for invocation in message.tool_invocations
                ],
            }
        )
        for invocation in message.tool_invocations:
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": invocation["toolCallId"],
                    "content": _tool_result_content(invocation.get("result")),
                }
            )
    return converted
