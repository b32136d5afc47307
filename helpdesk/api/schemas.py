"""Pydantic schemas for API request/response validation.

Field names follow the chat widget's camelCase wire format.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# Chat schemas


class ChatAttachment(BaseModel):
    """Attachment sent by the widget as a base64 data URL."""

    name: str | None = None
    contentType: str | None = None
    url: str


class ChatMessageIn(BaseModel):
    """The customer's new message."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    role: Literal["user"] = "user"
    content: str = ""
    attachments: list[ChatAttachment] = Field(
        default_factory=list, alias="experimental_attachments"
    )


class ReadPageTool(BaseModel):
    """Widget tool that reads the page the customer is looking at."""

    toolName: str = Field(..., min_length=1)
    toolDescription: str = ""


class ClientToolParameter(BaseModel):
    type: Literal["string", "number"]
    description: str | None = None
    optional: bool = False


class ClientTool(BaseModel):
    """Ad-hoc tool supplied by the widget and executed in the browser."""

    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: dict[str, ClientToolParameter] = Field(default_factory=dict)
    serverRequestUrl: str | None = None


class ChatRequest(BaseModel):
    """Request schema for POST /api/chat/conversation/{slug}."""

    message: ChatMessageIn
    readPageTool: ReadPageTool | None = None
    guideEnabled: bool = False
    tools: list[ClientTool] | None = None
    email: EmailStr | None = None


# Staff schemas


class DraftResponse(BaseModel):
    """Response schema for a generated AI draft."""

    id: int
    responseToId: int
    body: str | None
    isStale: bool


class RunToolRequest(BaseModel):
    """Request schema for running a mailbox tool from the staff inbox."""

    params: dict[str, Any] = Field(default_factory=dict)
    userId: str | None = None


class RunToolResponse(BaseModel):
    success: bool
    data: Any = None
    message: str | None = None
