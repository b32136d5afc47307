"""FastAPI routes for staff actions on conversations.

Every route requires the staff API key once HELPDESK_API_KEY is configured.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.api.schemas import DraftResponse, RunToolRequest, RunToolResponse
from helpdesk.api.staff_auth import require_staff_key
from helpdesk.db.connection import get_db
from helpdesk.db.models import Tool
from helpdesk.errors import NotFoundError
from helpdesk.orchestrator.draft import generate_draft_response
from helpdesk.orchestrator.tools import call_tool_api
from helpdesk.services.conversation_message_service import (
    get_last_user_message,
    serialize_response_ai_draft,
)
from helpdesk.services.conversation_service import get_conversation_by_slug, get_mailbox
from helpdesk.services.metadata_api import fetch_metadata

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/conversations",
    tags=["conversations"],
    dependencies=[Depends(require_staff_key)],
)


@router.post("/{slug}/draft", response_model=DraftResponse)
async def create_draft(slug: str, db: Session = Depends(get_db)) -> dict:
    """Generate a fresh AI email draft answering the latest customer message.

    The customer's metadata is fetched when the mailbox has a metadata
    endpoint. Any previous live draft is discarded.
    """
    conversation = get_conversation_by_slug(db, slug)
    mailbox = get_mailbox(db)
    last_user_message = get_last_user_message(db, conversation.id)
    email = last_user_message.email_from if last_user_message else None
    metadata = await fetch_metadata(mailbox, email) if email else None
    draft = await generate_draft_response(db, conversation.id, mailbox, metadata=metadata)
    return serialize_response_ai_draft(draft, mailbox)


@router.post("/{slug}/tools/{tool_slug}", response_model=RunToolResponse)
async def run_tool(
    slug: str,
    tool_slug: str,
    body: RunToolRequest,
    db: Session = Depends(get_db),
) -> dict:
    """Run a mailbox tool on behalf of a staff member.

    Invalid parameters are rejected with 400 before any request is made.
    """
    conversation = get_conversation_by_slug(db, slug)
    tool = db.scalars(select(Tool).where(Tool.slug == tool_slug)).first()
    if tool is None:
        raise NotFoundError("Tool", tool_slug)

    logger.info("staff_tool_run conversation=%s tool=%s user=%s", slug, tool_slug, body.userId)
    return await call_tool_api(db, conversation, tool, body.params, user_id=body.userId)
