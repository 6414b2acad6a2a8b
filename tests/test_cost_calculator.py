from __future__ import annotations

from decimal import Decimal

import pytest

from ink_economy.errors import UpstreamError, ValidationError
from ink_economy.models.usage import UsageReport
from ink_economy.services.cost_calculator import PricingRates, calculate_cost, price_usage


def test_reference_pricing_example():
    cost = calculate_cost(200_000, 100_000)

    assert cost.usd == Decimal("0.4")
    assert cost.local == Decimal("13.2")
    assert cost.rounded == 14
    assert cost.fee == 1
    assert cost.charge == 15


def test_zero_tokens_cost_nothing():
    cost = calculate_cost(0, 0)
    assert cost.charge == 0
    assert cost.fee == 0


def test_fee_threshold_uses_unrounded_amount():
    rates = PricingRates.of("1", "1", "1")

    below = calculate_cost(999_999, 0, rates)
    assert below.rounded == 1
    assert below.fee == 0
    assert below.charge == 1

    at = calculate_cost(1_000_000, 0, rates)
    assert at.rounded == 1
    assert at.fee == 1
    assert at.charge == 2


def test_charge_is_monotonic_in_token_counts():
    previous = -1
    for tokens in (0, 1, 10, 1_000, 30_000, 60_000, 61_000, 500_000, 5_000_000):
        charge = calculate_cost(tokens, tokens).charge
        assert charge >= previous
        previous = charge


def test_pricing_is_deterministic():
    assert calculate_cost(123_456, 7_890) == calculate_cost(123_456, 7_890)


@pytest.mark.parametrize("bad", [-1, 1.5, "10", True, None])
def test_invalid_token_counts_rejected(bad):
    with pytest.raises(ValidationError):
        calculate_cost(bad, 0)


def test_negative_rates_rejected():
    with pytest.raises(ValidationError):
        PricingRates.of("-0.5", "3.0", "33")


def test_usage_from_gemini_response():
    usage = UsageReport.from_response(
        {
            "candidates": [],
            "usageMetadata": {
                "promptTokenCount": 200_000,
                "candidatesTokenCount": 100_000,
                "totalTokenCount": 300_000,
            },
        }
    )
    assert usage.input_tokens == 200_000
    assert usage.output_tokens == 100_000
    assert price_usage(usage).charge == 15


def test_usage_from_openai_response_without_total():
    usage = UsageReport.from_response({"usage": {"prompt_tokens": 10, "completion_tokens": 5}})
    assert usage.total_tokens is None
    assert usage.effective_total == 15


@pytest.mark.parametrize(
    "body",
    [
        [],
        {"message": "ok"},
        {"usage": {"prompt_tokens": "many", "completion_tokens": 1}},
        {"usage": {"prompt_tokens": -3, "completion_tokens": 1}},
        {"usage": {"prompt_tokens": 1.5, "completion_tokens": 1}},
        {"usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 5, "totalTokenCount": -1}},
    ],
)
def test_unusable_usage_is_an_upstream_error(body):
    with pytest.raises(UpstreamError):
        UsageReport.from_response(body)
