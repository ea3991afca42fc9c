"""
Tests for the cost model.
"""

import pytest

from khobot.costs import (
    DEFAULT_OUTPUT_TOKENS,
    Pricing,
    TokenUsage,
    estimate_call_cost,
    estimate_cost,
    estimate_tokens,
    usage_cost,
)


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("", 3) == 0
    assert estimate_tokens("abc", 3) == 1
    assert estimate_tokens("abcd", 3) == 2


def test_estimate_cost():
    pricing = Pricing(input_cost_per_1m=0.4, output_cost_per_1m=1.6)
    assert estimate_cost(1_000_000, 0, pricing) == pytest.approx(0.4)
    assert estimate_cost(1000, 500, pricing) == pytest.approx(0.0004 + 0.0008)


def test_usage_from_openai_block():
    usage = TokenUsage.from_openai({"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150})
    assert usage.input_tokens == 120
    assert usage.output_tokens == 30
    assert usage.total_tokens == 150
    assert TokenUsage.from_openai(None) == TokenUsage()


def test_usage_cost():
    pricing = Pricing(input_cost_per_1m=1.0, output_cost_per_1m=2.0)
    assert usage_cost(TokenUsage(1_000_000, 1_000_000), pricing) == pytest.approx(3.0)


def test_call_estimate_counts_every_prompt_text():
    pricing = Pricing(chars_per_token=2)
    in_tok, out_tok, cost = estimate_call_cost(["aaaa", "bb", "c"], pricing, max_output_tokens=100)
    assert in_tok == 2 + 1 + 1
    assert out_tok == 100
    assert cost == pytest.approx(estimate_cost(4, 100, pricing))


def test_call_estimate_default_output_allowance():
    _, out_tok, _ = estimate_call_cost(["x"], Pricing(), max_output_tokens=0)
    assert out_tok == DEFAULT_OUTPUT_TOKENS
