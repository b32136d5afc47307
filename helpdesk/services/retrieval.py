"""Retrieval of prompt context: knowledge bank, website pages, past conversations.

Embeddings are stored as JSON float lists, so similarity is computed in
process with numpy. Only rows strictly above SIMILARITY_THRESHOLD are
returned, most similar first.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from helpdesk.db.models import (
    Conversation,
    ConversationMessage,
    KnowledgeBankEntry,
    MessageRole,
    WebsitePage,
)
from helpdesk.orchestrator.models import generate_embedding
from helpdesk.orchestrator.prompts import (
    clean_up_text_for_ai,
    knowledge_bank_prompt,
    past_conversations_prompt,
    website_pages_prompt,
)

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.4
MAX_SIMILAR_CONVERSATIONS = 3
MAX_SIMILAR_WEBSITE_PAGES = 5


@dataclass
class PromptRetrievalData:
    """Context gathered for one prompt."""

    knowledge_bank: str | None = None
    metadata: str | None = None
    website_pages_prompt: str | None = None
    website_pages: list[dict[str, Any]] = field(default_factory=list)


def cosine_similarity(query: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against each row of vectors."""
    norms = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
    dots = vectors @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = np.where(norms > 0, dots / norms, 0.0)
    return similarity


def _rank(
    query_embedding: list[float],
    candidates: list[tuple[Any, list[float]]],
    limit: int,
    threshold: float,
) -> list[tuple[Any, float]]:
    """Rank candidates by similarity, keeping those strictly above threshold."""
    usable = [(item, vector) for item, vector in candidates if vector]
    if not usable:
        return []
    query = np.asarray(query_embedding, dtype=float)
    matrix = np.asarray([vector for _, vector in usable], dtype=float)
    if matrix.shape[1] != query.shape[0]:
        logger.warning(
            "Skipping similarity search: embedding size %d != query size %d",
            matrix.shape[1],
            query.shape[0],
        )
        return []
    scores = cosine_similarity(query, matrix)
    order = np.argsort(-scores, kind="stable")
    ranked = [(usable[i][0], float(scores[i])) for i in order if scores[i] > threshold]
    return ranked[:limit]


async def find_similar_conversations(
    db: Session,
    query: str | list[float],
    limit: int = MAX_SIMILAR_CONVERSATIONS,
    exclude_conversation_slug: str | None = None,
    similarity_threshold: float = SIMILARITY_THRESHOLD,
) -> list[tuple[Conversation, float]] | None:
    """Find past conversations similar to a query.

    Prompt conversations and merged conversations are never returned.

    Args:
        db: Database session.
        query: Query text, or a precomputed embedding.
        limit: Maximum number of conversations.
        exclude_conversation_slug: Conversation to leave out.
        similarity_threshold: Minimum (exclusive) cosine similarity.

    Returns:
        (conversation, similarity) pairs, or None when nothing matches.
    """
    query_embedding = (
        query if isinstance(query, list) else await generate_embedding(query)
    )
    stmt = select(Conversation).where(
        Conversation.is_prompt.is_(False),
        Conversation.merged_into_id.is_(None),
        Conversation.embedding.is_not(None),
    )
    if exclude_conversation_slug:
        stmt = stmt.where(Conversation.slug != exclude_conversation_slug)

    conversations = list(db.scalars(stmt))
    ranked = _rank(
        query_embedding,
        [(c, c.embedding) for c in conversations],
        limit,
        similarity_threshold,
    )
    return ranked or None


def find_enabled_knowledge_bank_entries(db: Session) -> list[KnowledgeBankEntry]:
    return list(
        db.scalars(
            select(KnowledgeBankEntry)
            .where(KnowledgeBankEntry.enabled.is_(True))
            .order_by(KnowledgeBankEntry.content)
        )
    )


async def find_similar_website_pages(
    db: Session,
    query: str,
    limit: int = MAX_SIMILAR_WEBSITE_PAGES,
    similarity_threshold: float = SIMILARITY_THRESHOLD,
) -> list[dict[str, Any]]:
    """Find crawled pages similar to a query.

    Returns:
        Dicts with url, page_title, markdown and similarity, most similar first.
    """
    query_embedding = await generate_embedding(query)
    pages = list(
        db.scalars(
            select(WebsitePage).where(
                WebsitePage.deleted_at.is_(None),
                WebsitePage.embedding.is_not(None),
            )
        )
    )
    ranked = _rank(
        query_embedding,
        [(page, page.embedding) for page in pages],
        limit,
        similarity_threshold,
    )
    return [
        {
            "url": page.url,
            "page_title": page.page_title,
            "markdown": page.markdown,
            "similarity": similarity,
        }
        for page, similarity in ranked
    ]


def format_past_conversation(db: Session, conversation: Conversation) -> str:
    """Render a conversation transcript for the knowledge-base tool."""
    messages = db.scalars(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation.id)
        .order_by(ConversationMessage.id)
    )
    lines = []
    for message in messages:
        role = "Customer" if message.role == MessageRole.user.value else "Agent"
        lines.append(f"{role}:\n{clean_up_text_for_ai(message.cleaned_up_text or message.body)}")
    created = conversation.created_at
    date = f"{created.month}/{created.day}/{created.year}"
    body = "\n".join(lines)
    return f"--- Conversation Start ---\nDate: {date}\n{body}\n--- Conversation End ---"


async def get_past_conversations_prompt(db: Session, query: str) -> str | None:
    similar = await find_similar_conversations(db, query)
    if not similar:
        return None
    transcripts = [format_past_conversation(db, conversation) for conversation, _ in similar]
    return past_conversations_prompt(transcripts, query)


async def fetch_prompt_retrieval_data(
    db: Session,
    query: str,
    metadata: dict[str, Any] | None,
) -> PromptRetrievalData:
    """Gather knowledge bank, customer metadata and similar pages for a query."""
    knowledge_bank = find_enabled_knowledge_bank_entries(db)
    website_pages = await find_similar_website_pages(db, query)
    metadata_text = (
        f"User metadata:\n{json.dumps(metadata, indent=2)}" if metadata else None
    )

    return PromptRetrievalData(
        knowledge_bank=knowledge_bank_prompt([entry.content for entry in knowledge_bank]),
        metadata=metadata_text,
        website_pages_prompt=website_pages_prompt(website_pages) if website_pages else None,
        website_pages=website_pages,
    )
