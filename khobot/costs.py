"""
Cost model: turn token counts into money.

Pure functions only. Token counts for prompts we have not sent yet are
estimated from character length with a configurable chars-per-token ratio;
after a call, the provider's reported usage replaces the estimate.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# Assumed completion size when no explicit max_output_tokens is configured.
DEFAULT_OUTPUT_TOKENS = 2048

_PER_MILLION = 1_000_000


@dataclass(frozen=True)
class Pricing:
    """Per-million-token prices plus the chars/token ratio used for estimates."""
    input_cost_per_1m: float = 0.4
    output_cost_per_1m: float = 1.6
    chars_per_token: float = 3.0

    @classmethod
    def from_settings(cls, settings) -> "Pricing":
        return cls(
            input_cost_per_1m=settings.input_cost_per_1m,
            output_cost_per_1m=settings.output_cost_per_1m,
            chars_per_token=settings.chars_per_token,
        )


@dataclass
class TokenUsage:
    """Token counts reported by the provider for one call."""
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def from_openai(cls, usage: dict | None) -> "TokenUsage":
        """Read an OpenAI-style usage block, tolerating missing fields."""
        usage = usage or {}
        return cls(
            input_tokens=int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str, chars_per_token: float = 3.0) -> int:
    """Rough token count for text that has not been sent yet."""
    if not text:
        return 0
    return math.ceil(len(text) / max(chars_per_token, 1e-9))


def input_cost(tokens: int, pricing: Pricing) -> float:
    return max(tokens, 0) / _PER_MILLION * pricing.input_cost_per_1m


def output_cost(tokens: int, pricing: Pricing) -> float:
    return max(tokens, 0) / _PER_MILLION * pricing.output_cost_per_1m


def estimate_cost(input_tokens: int, output_tokens: int, pricing: Pricing) -> float:
    """Money for a call with the given token counts."""
    return input_cost(input_tokens, pricing) + output_cost(output_tokens, pricing)


def usage_cost(usage: TokenUsage, pricing: Pricing) -> float:
    return estimate_cost(usage.input_tokens, usage.output_tokens, pricing)


def estimate_call_cost(
    texts: list[str],
    pricing: Pricing,
    max_output_tokens: int = 0,
) -> tuple[int, int, float]:
    """
    Worst-case estimate for one model call before it is made.

    Input side counts every prompt text (system, history turns, user turn);
    output side assumes the full completion budget is used.

    Returns (input_tokens, output_tokens, cost).
    """
    in_tokens = sum(estimate_tokens(t, pricing.chars_per_token) for t in texts)
    out_tokens = max_output_tokens if max_output_tokens > 0 else DEFAULT_OUTPUT_TOKENS
    return in_tokens, out_tokens, estimate_cost(in_tokens, out_tokens, pricing)
