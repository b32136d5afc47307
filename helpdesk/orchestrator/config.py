"""Configuration for the AI response pipeline.

Model selection and provider settings are read from the environment on every
call so tests can override them with monkeypatch.

Environment Variables:
    COMPLETION_MODEL: Anthropic model used for chat completions.
    EMBEDDING_MODEL: OpenAI embedding model.
    REASONING_BASE_URL: OpenAI-compatible endpoint of the reasoning provider.
    REASONING_API_KEY: API key for the reasoning provider.
    REASONING_MODEL: Reasoning model identifier.
    COMPLETION_TIMEOUT_SECONDS: Optional hard timeout for a streamed completion.
    REDIS_URL: Key/value cache used for responses and embeddings.
    CHAT_REASONING_ENABLED: Run the reasoning pass for widget chats.
"""

import os

DEFAULT_COMPLETION_MODEL = "claude-sonnet-4-20250514"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_REASONING_BASE_URL = "https://api.fireworks.ai/inference/v1"
DEFAULT_REASONING_MODEL = "accounts/fireworks/models/deepseek-r1"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def get_completion_model() -> str:
    """Get the Anthropic model used for chat completions and drafts."""
    return os.environ.get("COMPLETION_MODEL", DEFAULT_COMPLETION_MODEL)


def get_embedding_model() -> str:
    return os.environ.get("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)


def get_reasoning_base_url() -> str:
    return os.environ.get("REASONING_BASE_URL", DEFAULT_REASONING_BASE_URL)


def get_reasoning_api_key() -> str | None:
    return os.environ.get("REASONING_API_KEY") or None


def get_reasoning_model() -> str:
    """Get the reasoning model identifier (DeepSeek R1 on Fireworks by default)."""
    return os.environ.get("REASONING_MODEL", DEFAULT_REASONING_MODEL)


def get_completion_timeout() -> float | None:
    """Get the optional completion timeout in seconds.

    Returns:
        Timeout in seconds, or None when unset or not a positive number.
    """
    raw = os.environ.get("COMPLETION_TIMEOUT_SECONDS", "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)


def is_chat_reasoning_enabled() -> bool:
    """Whether widget chats run the reasoning pass before answering."""
    return os.environ.get("CHAT_REASONING_ENABLED", "").strip().lower() in {"1", "true", "yes", "on"}
