"""LLM collaborators: providers, prompts, pricing and circuit breaking."""

from .circuit import CircuitBreaker, CircuitState
from .pricing import calculate_cost, PRICING_TABLE
from .prompts import PromptTemplate, DEFAULT_TEMPLATE, build_prompt
from .providers import (
    AbortToken,
    OpenAIProvider,
    OpenRouterProvider,
    ProviderRegistry,
    ProviderRequest,
    StreamError,
    StreamProvider,
    TextDelta,
    UsageReport,
    is_reasoning_model,
)

__all__ = [
    "AbortToken",
    "CircuitBreaker",
    "CircuitState",
    "DEFAULT_TEMPLATE",
    "OpenAIProvider",
    "OpenRouterProvider",
    "PRICING_TABLE",
    "PromptTemplate",
    "ProviderRegistry",
    "ProviderRequest",
    "StreamError",
    "StreamProvider",
    "TextDelta",
    "UsageReport",
    "build_prompt",
    "calculate_cost",
    "is_reasoning_model",
]
