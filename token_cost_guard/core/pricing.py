"""
Pricing calculations and rate management.

Maps (model, input tokens, output tokens) to a USD cost from a per-model
price table with a default fallback price.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from types import MappingProxyType
from typing import Mapping

from token_cost_guard.config.loader import PricingConfig
from .models import normalize_model

# Prices are quoted to at most five decimals per 1K tokens, so eight
# decimals per request keeps every table entry exact.
COST_QUANTUM = Decimal("0.00000001")
_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K input tokens
    output_cost_per_1k: Decimal  # Cost per 1K output tokens


@dataclass(frozen=True)
class PricingTable:
    """Read-only pricing table with a default entry for unknown models."""
    prices: Mapping[str, ModelPricing]
    default: ModelPricing

    @classmethod
    def from_config(cls, config: PricingConfig) -> "PricingTable":
        """Build the table once from configuration."""
        prices = {
            name: ModelPricing(
                input_cost_per_1k=Decimal(price["input"]),
                output_cost_per_1k=Decimal(price["output"]),
            )
            for name, price in config.models.items()
        }
        return cls(
            prices=MappingProxyType(prices),
            default=ModelPricing(
                input_cost_per_1k=Decimal(config.default["input"]),
                output_cost_per_1k=Decimal(config.default["output"]),
            ),
        )

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, normalizing engine names first.

        Args:
            model: Engine or model identifier

        Returns:
            ModelPricing for the model, or the default pricing if absent
        """
        return self.prices.get(normalize_model(model), self.default)

    def supports(self, model: str) -> bool:
        return normalize_model(model) in self.prices


DEFAULT_PRICING_TABLE = PricingTable.from_config(PricingConfig())


def _round(cost: Decimal) -> float:
    # Conservative: always round UP
    return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def add_costs(*costs: float) -> float:
    """Sum already-rounded costs without float drift."""
    return float(sum((Decimal(str(cost)) for cost in costs), Decimal(0)))


def calculate_input_cost(
    model: str, tokens: int, table: PricingTable = DEFAULT_PRICING_TABLE
) -> float:
    """Cost of input tokens: (tokens / 1000) * input_cost_per_1k."""
    pricing = table.get_pricing(model)
    return _round((Decimal(tokens) / _THOUSAND) * pricing.input_cost_per_1k)


def calculate_output_cost(
    model: str, tokens: int, table: PricingTable = DEFAULT_PRICING_TABLE
) -> float:
    """Cost of output tokens: (tokens / 1000) * output_cost_per_1k."""
    pricing = table.get_pricing(model)
    return _round((Decimal(tokens) / _THOUSAND) * pricing.output_cost_per_1k)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Engine or model identifier
        input_tokens: Prompt token count
        output_tokens: Completion token count
        table: Pricing table to use

    Returns:
        Total cost in USD rounded UP to COST_QUANTUM

    Raises:
        ValueError: If a token count is negative
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts cannot be negative")

    pricing = table.get_pricing(model)

    input_cost = (Decimal(input_tokens) / _THOUSAND) * pricing.input_cost_per_1k
    output_cost = (Decimal(output_tokens) / _THOUSAND) * pricing.output_cost_per_1k

    return _round(input_cost + output_cost)
