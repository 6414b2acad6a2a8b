"""
Pricing of AI token usage in ink credits.

    usd     = input/1e6 * INPUT_RATE + output/1e6 * OUTPUT_RATE
    local   = usd * EXCHANGE_RATE
    rounded = ceil(local)
    fee     = 1 if local >= 1 else 0
    charge  = rounded + fee

All arithmetic is Decimal so the same token counts always price the same.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal
from typing import NamedTuple, Union

from ..errors import ValidationError
from ..models.usage import CostBreakdown, UsageReport


TOKENS_PER_UNIT = Decimal(1_000_000)
ONE = Decimal(1)

RateLike = Union[Decimal, str, int]


class PricingRates(NamedTuple):
    input_usd_per_mtok: Decimal
    output_usd_per_mtok: Decimal
    exchange_rate: Decimal

    @classmethod
    def of(cls, input_rate: RateLike, output_rate: RateLike, exchange_rate: RateLike) -> "PricingRates":
        rates = cls(Decimal(str(input_rate)), Decimal(str(output_rate)), Decimal(str(exchange_rate)))
        if any(rate < 0 for rate in rates):
            raise ValidationError("pricing rates must be non-negative")
        return rates


DEFAULT_RATES = PricingRates.of("0.5", "3.0", "33")


def _token_count(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", details={name: value})
    if value < 0:
        raise ValidationError(f"{name} must be non-negative", details={name: value})
    return value


def calculate_cost(
    input_tokens: int, output_tokens: int, rates: PricingRates = DEFAULT_RATES
) -> CostBreakdown:
    input_tokens = _token_count("input_tokens", input_tokens)
    output_tokens = _token_count("output_tokens", output_tokens)

    usd = (
        Decimal(input_tokens) / TOKENS_PER_UNIT * rates.input_usd_per_mtok
        + Decimal(output_tokens) / TOKENS_PER_UNIT * rates.output_usd_per_mtok
    )
    local = usd * rates.exchange_rate
    rounded = int(local.to_integral_value(rounding=ROUND_CEILING))
    # The fee threshold looks at the unrounded amount, not at `rounded`.
    fee = 1 if local >= ONE else 0

    return CostBreakdown(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        usd=usd,
        local=local,
        rounded=rounded,
        fee=fee,
        charge=rounded + fee,
    )


def price_usage(usage: UsageReport, rates: PricingRates = DEFAULT_RATES) -> CostBreakdown:
    return calculate_cost(usage.input_tokens, usage.output_tokens, rates)
