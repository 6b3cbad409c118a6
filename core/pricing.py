"""
Pricing Table
=============
Per-model token rates and the cost/price arithmetic built on them.

Rates are USD per 1000 tokens. Monetary figures are computed in Decimal and
rounded half-up to 6 places before leaving this module.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from loguru import logger

from core.models import CostBreakdown, TokenUsage

_SIX_PLACES = Decimal("0.000001")
_THOUSAND = Decimal("1000")

# Rough tokenizer-free estimate used for the balance pre-check
CHARS_PER_TOKEN = 4


def _round(value: Decimal) -> Decimal:
    return value.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ModelPricing:
    """Token rates of one model."""

    input_cost_per_1k: float
    output_cost_per_1k: float

    def __post_init__(self):
        assert self.input_cost_per_1k >= 0, "Input rate must be non-negative"
        assert self.output_cost_per_1k >= 0, "Output rate must be non-negative"


class PricingTable:
    """
    Read-only model -> rates map, built once at startup.

    Unknown models are billed at the default model's rates.
    """

    def __init__(
        self,
        pricing: Mapping[str, Mapping[str, float]],
        default_model: str,
        markup: float = 0.25,
    ):
        if default_model not in pricing:
            raise ValueError(f"Default model {default_model} has no pricing entry")

        self._rates: Mapping[str, ModelPricing] = MappingProxyType(
            {
                model: ModelPricing(
                    input_cost_per_1k=float(rates["input"]),
                    output_cost_per_1k=float(rates["output"]),
                )
                for model, rates in pricing.items()
            }
        )
        self.default_model = default_model
        self.markup = Decimal(str(markup))

        logger.info(
            f"PricingTable initialized | models={len(self._rates)} | "
            f"default={default_model} | markup={markup:.0%}"
        )

    @property
    def models(self) -> list[str]:
        return list(self._rates)

    def is_known(self, model: Optional[str]) -> bool:
        return model in self._rates

    def rates_for(self, model: Optional[str]) -> ModelPricing:
        pricing = self._rates.get(model) if model else None
        if pricing is None:
            if model:
                logger.debug(f"No pricing for model {model}, using {self.default_model}")
            pricing = self._rates[self.default_model]
        return pricing

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    def estimate_cost(self, text: str, model: Optional[str]) -> float:
        """
        Worst-case provider cost of classifying `text`.

        The estimated token count is charged at both the input and the
        output rate, which over-reserves for short completions.
        """
        pricing = self.rates_for(model)
        tokens = Decimal(self.estimate_tokens(text))
        per_1k = Decimal(str(pricing.input_cost_per_1k)) + Decimal(
            str(pricing.output_cost_per_1k)
        )
        return float(tokens / _THOUSAND * per_1k)

    def calculate_cost(self, usage: TokenUsage, model: Optional[str]) -> CostBreakdown:
        """
        Split the provider cost of `usage` into input/output and apply markup.

        Totals are the sums of the rounded parts, so `total_cost ==
        input_cost + output_cost` holds exactly on the returned figures.
        """
        pricing = self.rates_for(model)

        input_cost = (
            Decimal(usage.prompt_tokens) * Decimal(str(pricing.input_cost_per_1k)) / _THOUSAND
        )
        output_cost = (
            Decimal(usage.completion_tokens)
            * Decimal(str(pricing.output_cost_per_1k))
            / _THOUSAND
        )
        factor = Decimal("1") + self.markup

        rounded_input_cost = _round(input_cost)
        rounded_output_cost = _round(output_cost)
        rounded_input_price = _round(input_cost * factor)
        rounded_output_price = _round(output_cost * factor)

        return CostBreakdown(
            input_cost=float(rounded_input_cost),
            output_cost=float(rounded_output_cost),
            total_cost=float(rounded_input_cost + rounded_output_cost),
            input_price=float(rounded_input_price),
            output_price=float(rounded_output_price),
            total_price=float(rounded_input_price + rounded_output_price),
            currency="USD",
        )

    @staticmethod
    def discounted_fee(total_cost: float, fraction: float) -> float:
        """Fee charged for serving a cached result: `fraction` of its original cost."""
        return float(_round(Decimal(str(total_cost)) * Decimal(str(fraction))))


__all__ = ["CHARS_PER_TOKEN", "ModelPricing", "PricingTable"]
