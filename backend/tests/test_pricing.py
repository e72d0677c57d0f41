"""Tests for cost calculation and credit packs."""

import pytest

from iaiaz.core.pricing import (
    CREDIT_PACKS,
    FALLBACK_PRICE,
    ModelPrice,
    calculate_co2,
    calculate_cost,
    calculate_provider_cost,
    estimate_cost,
    estimate_tokens,
    family_plan_quote,
    markup_from_percentage,
    price_for_model,
    price_with_markup,
    resolve_purchase,
)


class TestCalculateCost:
    """Charged amounts include the markup and are rounded to 6 decimals."""

    def test_default_markup(self):
        # 1000 * 3 + 500 * 15 = 10500 per million -> 0.0105 EUR, x1.5
        assert calculate_cost(3.0, 15.0, 1000, 500) == pytest.approx(0.01575)

    def test_custom_markup(self):
        assert calculate_cost(3.0, 15.0, 1000, 500, markup=1.0) == pytest.approx(0.0105)
        assert calculate_cost(3.0, 15.0, 1000, 500, markup=2.0) == pytest.approx(0.021)

    def test_zero_tokens_cost_nothing(self):
        assert calculate_cost(3.0, 15.0, 0, 0) == 0.0

    def test_never_negative(self):
        assert calculate_cost(-1.0, -1.0, 100, 100) == 0.0

    def test_provider_cost_has_no_markup(self):
        assert calculate_provider_cost(3.0, 15.0, 1000, 500) == pytest.approx(0.0105)

    def test_rounded_to_six_decimals(self):
        cost = calculate_cost(0.15, 0.6, 7, 3)
        assert cost == round(cost, 6)


class TestMarkup:
    def test_percentage_to_multiplier(self):
        assert markup_from_percentage(50) == 1.5
        assert markup_from_percentage(0) == 1.0
        assert markup_from_percentage(120) == 2.2

    def test_missing_percentage_uses_default(self):
        assert markup_from_percentage(None) == 1.5

    def test_displayed_price(self):
        assert price_with_markup(3.0, 1.5) == 4.5


class TestEstimates:
    def test_estimate_tokens_four_chars_per_token(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_estimate_cost_assumes_500_output_tokens(self):
        price = ModelPrice(3.0, 15.0)
        # 400 chars -> 100 input tokens
        expected = calculate_cost(3.0, 15.0, 100, 500, 1.5)
        assert estimate_cost(price, "x" * 400, 1.5) == expected

    def test_unknown_model_uses_fallback_price(self):
        assert price_for_model({}, "mystery-model") == FALLBACK_PRICE
        known = ModelPrice(1.0, 2.0)
        assert price_for_model({"m": known}, "m") is known


class TestCO2:
    def test_default_factor(self):
        assert calculate_co2(1_000_000) == 0.5

    def test_model_factor(self):
        assert calculate_co2(2_000_000, 1.2) == 2.4

    def test_zero_factor_is_respected(self):
        assert calculate_co2(1_000_000, 0.0) == 0.0


class TestResolvePurchase:
    def test_known_pack(self):
        pack = resolve_purchase("regular", None)
        assert pack == CREDIT_PACKS["regular"]
        assert pack.credits == 10.0
        assert pack.price_cents == 1000

    def test_unknown_pack(self):
        assert resolve_purchase("mega", None) is None
        assert resolve_purchase(None, None) is None

    def test_custom_amount_takes_precedence(self):
        pack = resolve_purchase("starter", 42)
        assert pack.id == "custom"
        assert pack.credits == 42.0
        assert pack.price_cents == 4200

    @pytest.mark.parametrize("amount", [0, 101, -5])
    def test_custom_amount_out_of_range(self, amount):
        assert resolve_purchase(None, amount) is None


class TestFamilyPlan:
    @pytest.mark.parametrize("children,price_cents,credits", [
        (1, 990, 5.0),
        (2, 1980, 10.0),
        (3, 2480, 15.0),
        (5, 3480, 25.0),
    ])
    def test_extra_children_only_pay_for_credits(self, children, price_cents, credits):
        quote = family_plan_quote(children)
        assert quote.monthly_price_cents == price_cents
        assert quote.monthly_credits == credits
        assert quote.paid_seats == min(children, 2)
