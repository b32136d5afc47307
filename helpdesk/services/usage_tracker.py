"""Token usage and cost tracking for model calls.

Each model invocation records one AIUsageEvent. Cost comes from a static
per-model price table in USD per million tokens, distinguishing fresh input,
cached input and output tokens, and is kept as a Decimal with 7 places so
aggregation never drifts.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential_jitter

from helpdesk.db.models import AIUsageEvent, Mailbox

logger = logging.getLogger(__name__)

COST_PRECISION = Decimal("0.0000001")
_PER_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class ModelPrice:
    """USD price per million tokens."""

    input: Decimal
    cached_input: Decimal
    output: Decimal


@dataclass
class TokenUsage:
    """Token counts reported by a model call.

    prompt_tokens includes cached_tokens.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


MODEL_PRICES: dict[str, ModelPrice] = {
    "o4-mini-2025-04-16": ModelPrice(Decimal("1.10"), Decimal("0.275"), Decimal("4.40")),
    "gpt-4.1": ModelPrice(Decimal("2.00"), Decimal("0.50"), Decimal("8.00")),
    "gpt-4.1-mini": ModelPrice(Decimal("0.40"), Decimal("0.10"), Decimal("1.60")),
    "gpt-4o": ModelPrice(Decimal("2.50"), Decimal("1.25"), Decimal("10.00")),
    "gpt-4o-mini": ModelPrice(Decimal("0.15"), Decimal("0.075"), Decimal("0.60")),
    "claude-sonnet-4-20250514": ModelPrice(Decimal("3.00"), Decimal("0.30"), Decimal("15.00")),
    "claude-haiku-4-5-20251001": ModelPrice(Decimal("1.00"), Decimal("0.10"), Decimal("5.00")),
    "fireworks/deepseek-r1": ModelPrice(Decimal("3.00"), Decimal("3.00"), Decimal("8.00")),
    "text-embedding-3-small": ModelPrice(Decimal("0.02"), Decimal("0.02"), Decimal("0")),
}


def calculate_cost(model: str, usage: TokenUsage) -> Decimal:
    """Compute the cost of one call, quantized to 7 decimal places.

    Unknown models cost zero and log a warning.
    """
    price = MODEL_PRICES.get(model)
    if price is None:
        logger.warning("No price configured for model %s, recording zero cost", model)
        return Decimal(0).quantize(COST_PRECISION)

    cached = min(usage.cached_tokens, usage.prompt_tokens)
    fresh = usage.prompt_tokens - cached
    cost = (
        Decimal(fresh) * price.input
        + Decimal(cached) * price.cached_input
        + Decimal(usage.completion_tokens) * price.output
    ) / _PER_MILLION
    return cost.quantize(COST_PRECISION)


def format_cost(cost: Decimal) -> str:
    """Render a cost as a fixed 7-decimal string."""
    return str(cost.quantize(COST_PRECISION))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential_jitter(initial=1, exp_base=2, max=60),
    reraise=True,
)
async def track_ai_usage_event(
    db: Session,
    model: str,
    query_type: str,
    usage: TokenUsage,
    mailbox: Mailbox | None = None,
) -> AIUsageEvent:
    """Append a usage event for one model call.

    Retried up to 3 times with exponential jitter, sleeping on the event
    loop between attempts; the last error propagates.

    Args:
        db: Database session.
        model: Model name used for pricing.
        query_type: Call category, e.g. 'chat_completion' or 'reasoning'.
        usage: Token counts for the call.
        mailbox: Mailbox the call was made for.

    Returns:
        The created AIUsageEvent.
    """
    event = AIUsageEvent(
        mailbox_id=mailbox.id if mailbox is not None else None,
        model_name=model,
        query_type=query_type,
        input_tokens_count=usage.prompt_tokens,
        output_tokens_count=usage.completion_tokens,
        cached_tokens_count=usage.cached_tokens,
        cost=calculate_cost(model, usage),
    )
    db.add(event)
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("Failed to record usage for %s/%s, retrying", model, query_type)
        raise
    logger.debug(
        "ai_usage model=%s query_type=%s input=%d output=%d cached=%d cost=%s",
        model,
        query_type,
        usage.prompt_tokens,
        usage.completion_tokens,
        usage.cached_tokens,
        format_cost(event.cost),
    )
    return event
