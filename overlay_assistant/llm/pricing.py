"""
Pricing calculations for streamed model calls.

OpenRouter reports the cost of each call in its final usage frame; for
OpenAI the cost is computed from this static table.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal  # USD per 1M prompt tokens
    output_per_million: Decimal  # USD per 1M completion tokens


# OpenAI list prices, USD per million tokens
PRICING_TABLE: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(Decimal("2.50"), Decimal("10.00")),
    "gpt-4o-mini": ModelPricing(Decimal("0.15"), Decimal("0.60")),
    "gpt-4.1": ModelPricing(Decimal("2.00"), Decimal("8.00")),
    "gpt-4.1-mini": ModelPricing(Decimal("0.40"), Decimal("1.60")),
    "gpt-4.1-nano": ModelPricing(Decimal("0.10"), Decimal("0.40")),
    "gpt-5": ModelPricing(Decimal("1.25"), Decimal("10.00")),
    "gpt-5-mini": ModelPricing(Decimal("0.25"), Decimal("2.00")),
    "gpt-5-nano": ModelPricing(Decimal("0.05"), Decimal("0.40")),
    "o1": ModelPricing(Decimal("15.00"), Decimal("60.00")),
    "o1-mini": ModelPricing(Decimal("1.10"), Decimal("4.40")),
    "o3-mini": ModelPricing(Decimal("1.10"), Decimal("4.40")),
    "o4-mini": ModelPricing(Decimal("1.10"), Decimal("4.40")),
}


def get_pricing(model: str) -> Optional[ModelPricing]:
    """Look up pricing for a model, ignoring a ``provider/`` prefix."""
    if model in PRICING_TABLE:
        return PRICING_TABLE[model]
    return PRICING_TABLE.get(model.rsplit("/", 1)[-1])


def calculate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    provider_cost: Optional[float] = None,
) -> float:
    """Calculate the USD cost of one call.

    Args:
        model: Model identifier
        prompt_tokens: Reported prompt tokens
        completion_tokens: Reported completion tokens (reasoning included)
        provider_cost: Cost reported by the provider, used when positive

    Returns:
        Cost in USD; 0.0 for models missing from the table
    """
    if provider_cost is not None and provider_cost > 0:
        return float(provider_cost)
    pricing = get_pricing(model)
    if pricing is None:
        return 0.0
    prompt_cost = Decimal(prompt_tokens) / _MILLION * pricing.input_per_million
    completion_cost = Decimal(completion_tokens) / _MILLION * pricing.output_per_million
    return float(prompt_cost + completion_cost)
