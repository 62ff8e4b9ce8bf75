"""
Pricing calculations and rate management.

Handles cost estimates for prompts before and after they reach a model.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from .token_counter import TokenUsage, estimate_tokens

DEFAULT_MODEL = "gpt-3.5-turbo"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    cost_per_token: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    default_model: str = DEFAULT_MODEL

    def get_pricing(self, model: Optional[str] = None) -> ModelPricing:
        """Get pricing for a model, falling back to the default model.

        Cost estimates must always be producible, so an unknown model is
        priced like the default one rather than rejected.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model
        """
        if model and model in self.prices:
            return self.prices[model]
        return self.prices[self.default_model]


PRICING_TABLE = PricingTable({
    "gpt-3.5-turbo": ModelPricing(cost_per_token=Decimal("0.00002")),
    "gpt-4": ModelPricing(cost_per_token=Decimal("0.00006")),
    "gpt-4-turbo-preview": ModelPricing(cost_per_token=Decimal("0.0001")),
})


def cost_per_token(model: Optional[str] = None) -> float:
    """Per-token cost of a model as a float."""
    return float(PRICING_TABLE.get_pricing(model).cost_per_token)


def estimate_cost(tokens: int, model: Optional[str] = None) -> float:
    """Estimate the cost of a token count on a model.

    Args:
        tokens: Number of tokens
        model: Model identifier; unknown or missing uses the default model

    Returns:
        Estimated cost in dollars
    """
    pricing = PRICING_TABLE.get_pricing(model)
    return float(Decimal(tokens) * pricing.cost_per_token)


def calculate_cost(model: Optional[str], usage: TokenUsage) -> float:
    """Calculate the cost of a completed model call from its reported usage."""
    return estimate_cost(usage.total_tokens, model)


def estimate_request_cost(
    query: str,
    model: Optional[str] = None,
    base_template_tokens: int = 500,
) -> float:
    """Estimate the standalone cost of answering a query.

    The estimate adds the query's own tokens to a fixed allowance for the
    template text wrapped around it.
    """
    return estimate_cost(estimate_tokens(query) + base_template_tokens, model)
