"""FastAPI routes for the embeddable chat widget.

POST /api/chat/conversation/{slug} answers a customer message as a
Server-Sent Events stream. Each SSE message is unnamed and carries
{"event": <part>, "data": <payload>} as JSON, with part one of text, data,
annotation, source, tool_call, error or finish.

The answer keeps generating after a client disconnect, so the route opens
its own database session and closes it once generation has finished.
"""

import json
import logging
from typing import Any, AsyncGenerator, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from helpdesk.api.schemas import ChatAttachment, ChatRequest
from helpdesk.api.staff_auth import is_staff_request
from helpdesk.db.connection import SessionLocal
from helpdesk.db.models import Conversation, Mailbox
from helpdesk.errors import NotFoundError
from helpdesk.orchestrator.chat import (
    CORS_HEADERS,
    ResponseContext,
    create_user_message,
    respond_with_ai,
)
from helpdesk.orchestrator.config import is_chat_reasoning_enabled
from helpdesk.orchestrator.messages import ChatMessage
from helpdesk.orchestrator.subject import (
    CHAT_CONVERSATION_SUBJECT,
    generate_conversation_subject,
)
from helpdesk.services.conversation_service import get_conversation_by_slug, get_mailbox

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

IMAGE_PLACEHOLDER = "[Image]"


def get_session_factory() -> Callable[[], Session]:
    """Session factory for routes that keep a session past the handler."""
    return SessionLocal


def _cors_json(status_code: int, content: dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


def _is_authorized(conversation: Conversation, email: str | None) -> bool:
    """Anonymous visitors may only use anonymous conversations, and
    identified customers only their own."""
    if email is None:
        return conversation.email_from is None
    return conversation.email_from == email


def _attachment_data(attachments: list[ChatAttachment]) -> list[dict[str, str]]:
    """Split data URLs into {name, contentType, data} with base64 data.

    Raises:
        ValueError: If an attachment is not a base64 data URL.
    """
    result = []
    for attachment in attachments:
        _, _, data = attachment.url.partition(",")
        if not data:
            raise ValueError(
                f"Attachment {attachment.name or 'unknown'} has invalid URL format"
            )
        result.append(
            {
                "name": attachment.name or "unknown.png",
                "contentType": attachment.contentType or "image/png",
                "data": data,
            }
        )
    return result


def _subject_updater(db: Session, conversation: Conversation, mailbox: Mailbox, content: str):
    original_subject = conversation.subject

    async def on_response(context: ResponseContext) -> None:
        try:
            if (
                (not context.is_prompt_conversation and original_subject == CHAT_CONVERSATION_SUBJECT)
                or (
                    context.is_prompt_conversation
                    and not context.is_first_message
                    and original_subject == context.messages[0].content
                )
                or context.human_support_requested
            ):
                user_messages = [m for m in context.messages if m.role == "user"]
                subject = await generate_conversation_subject(
                    db, conversation.id, user_messages, mailbox
                )
                logger.info(
                    "conversation_subject slug=%s subject=%s", conversation.slug, subject
                )
            elif context.is_prompt_conversation and original_subject == CHAT_CONVERSATION_SUBJECT:
                conversation.subject = content
                db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to update subject of conversation %s", conversation.id)

    return on_response


@router.options("/conversation/{slug}")
def chat_options(slug: str) -> Response:
    """CORS preflight for the widget."""
    return Response(status_code=204, headers=CORS_HEADERS)


@router.post("/conversation/{slug}")
async def chat(
    slug: str,
    body: ChatRequest,
    request: Request,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Answer a customer message as an SSE stream.

    Args:
        slug: Public conversation slug.
        body: Widget message, tools and identity.

    Returns:
        EventSourceResponse streaming the answer, or a JSON error.
    """
    db = session_factory()
    try:
        try:
            conversation = get_conversation_by_slug(db, slug)
            mailbox = get_mailbox(db)
        except NotFoundError as e:
            db.close()
            return _cors_json(404, {"error": str(e)})

        email = str(body.email) if body.email else None
        if not _is_authorized(conversation, email):
            db.close()
            return _cors_json(403, {"error": "Unauthorized"})

        try:
            attachment_data = _attachment_data(body.message.attachments)
        except ValueError as e:
            db.close()
            return _cors_json(400, {"error": str(e)})

        content = body.message.content or (IMAGE_PLACEHOLDER if attachment_data else "")
        user_message = create_user_message(
            db,
            conversation.id,
            email,
            content,
            attachment_data,
            file_store=getattr(request.app.state, "file_store", None),
        )

        message = ChatMessage(
            id=body.message.id or str(user_message.id),
            role="user",
            content=content,
            attachments=[a.model_dump() for a in body.message.attachments],
        )
        response = await respond_with_ai(
            db,
            conversation,
            mailbox,
            user_email=email,
            send_email=False,
            message=message,
            message_id=user_message.id,
            read_page_tool=body.readPageTool.model_dump() if body.readPageTool else None,
            guide_enabled=body.guideEnabled,
            on_response=_subject_updater(db, conversation, mailbox, content),
            is_helper_user=is_staff_request(request),
            reasoning_enabled=is_chat_reasoning_enabled(),
            tools=[tool.model_dump() for tool in body.tools] if body.tools else None,
        )
    except Exception:
        db.close()
        raise

    async def event_generator() -> AsyncGenerator[dict, None]:
        try:
            async for part in response.stream:
                yield {"data": json.dumps(part, default=str)}
        finally:
            response.stream.when_done(db.close)

    return EventSourceResponse(event_generator(), headers=response.headers)
