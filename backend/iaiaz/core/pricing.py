"""Cost calculation for AI usage.

Prices are expressed per million tokens and charged in EUR. The amount
billed to the user is the provider cost multiplied by the markup taken
from the `markup` app setting (a percentage; 50 means x1.5).
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Default markup: 50% on top of provider prices
DEFAULT_MARKUP_PERCENTAGE = 50
DEFAULT_MARKUP = 1 + DEFAULT_MARKUP_PERCENTAGE / 100

# Applied when a model id is not in the catalogue
FALLBACK_INPUT_PRICE = 3.0
FALLBACK_OUTPUT_PRICE = 15.0

# Rough estimate used before a request is sent
CHARS_PER_TOKEN = 4
ESTIMATED_OUTPUT_TOKENS = 500

DEFAULT_CO2_PER_MILLION_TOKENS = 0.5  # grams

# Custom top-up bounds (EUR)
MIN_CUSTOM_AMOUNT = 1
MAX_CUSTOM_AMOUNT = 100


@dataclass(frozen=True)
class CreditPack:
    id: str
    name: str
    credits: float
    price_cents: int
    popular: bool = False


CREDIT_PACKS = {
    "starter": CreditPack(id="starter", name="Starter", credits=5.0, price_cents=500),
    "regular": CreditPack(id="regular", name="Regular", credits=10.0, price_cents=1000, popular=True),
    "power": CreditPack(id="power", name="Power", credits=20.0, price_cents=2000),
}


@dataclass(frozen=True)
class ModelPrice:
    """Per-million-token prices for one model."""
    input_price: float
    output_price: float
    co2_per_million_tokens: float = DEFAULT_CO2_PER_MILLION_TOKENS


FALLBACK_PRICE = ModelPrice(FALLBACK_INPUT_PRICE, FALLBACK_OUTPUT_PRICE)


def markup_from_percentage(percentage: Optional[float]) -> float:
    """Convert the stored markup percentage into a multiplier."""
    if percentage is None:
        return DEFAULT_MARKUP
    return 1 + float(percentage) / 100


def calculate_provider_cost(
    input_price: float,
    output_price: float,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """Raw provider cost in EUR, before markup."""
    cost = (input_tokens * input_price + output_tokens * output_price) / 1_000_000
    return round(max(cost, 0.0), 6)


def calculate_cost(
    input_price: float,
    output_price: float,
    input_tokens: int,
    output_tokens: int,
    markup: float = DEFAULT_MARKUP,
) -> float:
    """
    Calculate the amount charged for a model invocation.

    Args:
        input_price: Price per million input tokens
        output_price: Price per million output tokens
        input_tokens: Number of input tokens used
        output_tokens: Number of output tokens generated
        markup: Multiplier applied to the provider cost

    Returns:
        Cost in EUR, rounded to 6 decimals, never negative
    """
    cost = (input_tokens * input_price + output_tokens * output_price) / 1_000_000 * markup
    return round(max(cost, 0.0), 6)


def price_for_model(prices: dict[str, ModelPrice], model_id: str) -> ModelPrice:
    """Look up a model price, falling back to default pricing for unknown ids."""
    price = prices.get(model_id)
    if price is None:
        logger.warning(f"Unknown model {model_id}, using fallback pricing")
        return FALLBACK_PRICE
    return price


def estimate_tokens(text: str) -> int:
    """Estimate token count at ~4 characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_cost(
    price: ModelPrice,
    input_text: str,
    markup: float = DEFAULT_MARKUP,
    estimated_output_tokens: int = ESTIMATED_OUTPUT_TOKENS,
) -> float:
    """Estimate the charge for a request before sending it to the provider."""
    return calculate_cost(
        price.input_price,
        price.output_price,
        estimate_tokens(input_text),
        estimated_output_tokens,
        markup,
    )


def calculate_co2(total_tokens: int, co2_per_million_tokens: Optional[float] = None) -> float:
    """Estimated CO2 emissions in grams for a number of tokens."""
    factor = DEFAULT_CO2_PER_MILLION_TOKENS if co2_per_million_tokens is None else co2_per_million_tokens
    return round(total_tokens / 1_000_000 * factor, 6)


def price_with_markup(price_per_million: float, markup: float = DEFAULT_MARKUP) -> float:
    """Displayed per-million price, markup included."""
    return round(price_per_million * markup, 4)


def resolve_purchase(pack_id: Optional[str], custom_amount: Optional[int]) -> Optional[CreditPack]:
    """
    Resolve a checkout request into a credit pack.

    A custom amount (whole EUR between 1 and 100) takes precedence over
    a pack id. Returns None for an unknown pack or an out-of-range amount.
    """
    if custom_amount is not None:
        if not MIN_CUSTOM_AMOUNT <= custom_amount <= MAX_CUSTOM_AMOUNT:
            return None
        return CreditPack(
            id="custom",
            name=f"{custom_amount} EUR",
            credits=float(custom_amount),
            price_cents=custom_amount * 100,
        )
    if pack_id is None:
        return None
    return CREDIT_PACKS.get(pack_id)


# Family plan: monthly, per child. Seats beyond the first two pay for credits only.
FAMILY_PRICE_PER_CHILD = 9.90
FAMILY_PRICE_PER_EXTRA_CHILD = 5.00
FAMILY_CREDITS_PER_CHILD = 5.0
FAMILY_PAID_SEATS = 2


@dataclass(frozen=True)
class FamilyPlanQuote:
    child_count: int
    paid_seats: int
    extra_children: int
    monthly_price_cents: int
    monthly_credits: float


def family_plan_quote(child_count: int) -> FamilyPlanQuote:
    """Monthly price and included credits of the family plan for a number of children."""
    paid_seats = min(child_count, FAMILY_PAID_SEATS)
    extra_children = max(0, child_count - FAMILY_PAID_SEATS)
    price_cents = (
        paid_seats * round(FAMILY_PRICE_PER_CHILD * 100)
        + extra_children * round(FAMILY_PRICE_PER_EXTRA_CHILD * 100)
    )
    return FamilyPlanQuote(
        child_count=child_count,
        paid_seats=paid_seats,
        extra_children=extra_children,
        monthly_price_cents=price_cents,
        monthly_credits=round(child_count * FAMILY_CREDITS_PER_CHILD, 2),
    )
