"""Tests for the first-contact response cache."""

from helpdesk.services.response_cache import (
    CacheFor,
    cache_initial_response,
    get_cached_initial_response,
    hash_query,
    initial_response_cache_key,
)


def test_key_format():
    assert initial_response_cache_key(7, "hello") == (
        "chat:v2:mailbox-7:initial-response:5d41402abc4b2a76b9719d911017c592"
    )
    assert hash_query("hello") == "5d41402abc4b2a76b9719d911017c592"


async def test_round_trip_with_ttl(fake_cache):
    await cache_initial_response(7, "How do I reset my password?", "Click 'Forgot password'.")

    assert await get_cached_initial_response(7, "How do I reset my password?") == (
        "Click 'Forgot password'."
    )
    assert await get_cached_initial_response(8, "How do I reset my password?") is None
    ttl = await fake_cache.ttl(initial_response_cache_key(7, "How do I reset my password?"))
    assert 0 < ttl <= 86400


async def test_non_json_value_is_ignored(fake_cache):
    await fake_cache.set("broken", "not json{")

    assert await CacheFor[str]("broken").get() is None


async def test_content_is_hashed_literally():
    await cache_initial_response(1, "Hello", "Hi!")

    assert await get_cached_initial_response(1, "hello") is None
    assert await get_cached_initial_response(1, "Hello ") is None
