"""Token accounting for generated replies.

A reply's token cost is what the provider reports in ``usage_metadata``; when
a provider reports nothing (common for self-hosted OpenAI-compatible servers)
it is estimated from the character count. USD cost is priced per model from
``MODEL_PRICING`` and only lands in the audit log.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# (model_prefix, input USD per 1M tokens, output USD per 1M tokens).
# Longer prefixes first: the first match wins.
MODEL_PRICING: list[tuple[str, float, float]] = [
    ("gpt-4o-mini", 0.15, 0.60),
    ("gpt-4o", 2.50, 10.00),
    ("gpt-4-turbo", 10.00, 30.00),
    ("gpt-4", 30.00, 60.00),
    ("gpt-3.5-turbo", 0.50, 1.50),
    ("claude-3-5-sonnet", 3.00, 15.00),
    ("claude-3-5-haiku", 0.80, 4.00),
    ("claude-3-opus", 15.00, 75.00),
    ("claude-sonnet-4", 3.00, 15.00),
    ("claude-opus-4", 15.00, 75.00),
    ("gemini-2.0-flash", 0.10, 0.40),
    ("gemini-1.5-pro", 1.25, 5.00),
]

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_response(cls, response) -> TokenUsage:
        """Read ``usage_metadata`` off a LangChain AIMessage; zeros if absent."""
        usage = getattr(response, "usage_metadata", None)
        if not isinstance(usage, dict):
            return cls()
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
        )


def get_model_pricing(model_name: str) -> tuple[float, float]:
    """Return (input, output) USD per 1M tokens; unknown models are free."""
    lower = (model_name or "").lower()
    for prefix, input_cost, output_cost in MODEL_PRICING:
        if lower and lower.startswith(prefix):
            return (input_cost, output_cost)
    return (0.0, 0.0)


def calculate_cost(model_name: str, input_tokens: int, output_tokens: int) -> float:
    input_rate, output_rate = get_model_pricing(model_name)
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def estimate_tokens(text: str | None) -> int:
    """Approximate token count, one token per four characters, rounded up."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN)

