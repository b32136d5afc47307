"""Key/value cache for first-contact responses and embeddings.

Values are JSON-encoded in Redis. There is no compare-and-swap: two
concurrent misses for the same key both write, and the last write wins.
"""

import hashlib
import json
import logging
from typing import Generic, TypeVar

from redis import asyncio as aioredis

from helpdesk.orchestrator.config import get_redis_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESPONSE_CACHE_TTL_SECONDS = 60 * 60 * 24

_client: aioredis.Redis | None = None


def get_cache_client() -> aioredis.Redis:
    """Return the process-wide async Redis client, creating it on first use."""
    global _client
    if _client is None:
        _client = aioredis.from_url(get_redis_url(), decode_responses=True)
    return _client


def set_cache_client(client: aioredis.Redis | None) -> None:
    """Replace the cache client (used by tests and app shutdown)."""
    global _client
    _client = client


async def close_cache_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class CacheFor(Generic[T]):
    """Typed accessor for a single cache key.

    Usage:
        cached = await CacheFor[str](key).get()
        await CacheFor[str](key).set("answer", ttl_seconds=3600)
    """

    def __init__(self, key: str, client: aioredis.Redis | None = None) -> None:
        self.key = key
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client or get_cache_client()

    async def get(self) -> T | None:
        raw = await self.client.get(self.key)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding non-JSON cache value at %s", self.key)
            return None

    async def set(self, value: T, ttl_seconds: int | None = None) -> None:
        await self.client.set(self.key, json.dumps(value), ex=ttl_seconds)


def hash_query(content: str) -> str:
    """MD5 hex digest of the literal message content."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def initial_response_cache_key(mailbox_id: int, content: str) -> str:
    """Cache key of a prompt conversation's first answer.

    Format: chat:v2:mailbox-<id>:initial-response:<md5(content)>
    """
    return f"chat:v2:mailbox-{mailbox_id}:initial-response:{hash_query(content)}"


async def get_cached_initial_response(mailbox_id: int, content: str) -> str | None:
    return await CacheFor[str](initial_response_cache_key(mailbox_id, content)).get()


async def cache_initial_response(mailbox_id: int, content: str, response: str) -> None:
    key = initial_response_cache_key(mailbox_id, content)
    await CacheFor[str](key).set(response, ttl_seconds=RESPONSE_CACHE_TTL_SECONDS)
    logger.info("initial_response_cached key=%s", key)
