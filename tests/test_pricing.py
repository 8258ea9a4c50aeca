from decimal import Decimal

import pytest

from billing.exceptions import ValidationError
from billing.plans import PAID_PLANS, PLAN_PRICING
from billing.pricing import (
    annual_price,
    monthly_price,
    price_for_cycle,
    recurring_interval,
    round_money,
    to_minor_units,
)

pytestmark = pytest.mark.unit


class TestMonthlyPrice:
    def test_minimum_applies_for_small_centers(self):
        # 10 x 1.50 = 15.00 < 29.00
        assert monthly_price("starter", 10) == Decimal("29.00")

    def test_per_child_rate_above_minimum(self):
        assert monthly_price("professional", 50) == Decimal("125.00")
        assert monthly_price("enterprise", 40) == Decimal("140.00")

    def test_zero_children_charges_minimum(self):
        for plan in PAID_PLANS:
            assert monthly_price(plan, 0) == PLAN_PRICING[plan]["monthly"]["minimum"]

    def test_never_below_minimum(self):
        for plan in PAID_PLANS:
            minimum = PLAN_PRICING[plan]["monthly"]["minimum"]
            for units in range(0, 120, 7):
                assert monthly_price(plan, units) >= minimum

    def test_monotonic_in_unit_count(self):
        for plan in PAID_PLANS:
            prices = [monthly_price(plan, units) for units in range(0, 300)]
            assert prices == sorted(prices)

    def test_repricing_is_deterministic(self):
        assert monthly_price("professional", 37) == monthly_price("professional", 37)
        assert str(monthly_price("professional", 37)) == "92.50"

    def test_custom_pricing_table(self):
        pricing = {
            "starter": {
                "monthly": {"unit_rate": Decimal("2"), "minimum": Decimal("50")},
                "annual": {"unit_rate": Decimal("20"), "minimum": Decimal("500")},
            },
        }
        assert monthly_price("starter", 30, pricing) == Decimal("60.00")
        assert monthly_price("starter", 10, pricing) == Decimal("50.00")


class TestAnnualPrice:
    def test_uses_annual_rate_not_monthly_times_twelve(self):
        result = annual_price("professional", 50)
        assert result["annual"] == Decimal("1250.00")
        assert result["annual"] != monthly_price("professional", 50) * 12

    def test_annual_minimum(self):
        assert annual_price("starter", 5)["annual"] == Decimal("289.00")

    def test_equivalent_monthly_rounds_half_up(self):
        # 289 / 12 = 24.0833...
        assert annual_price("starter", 5)["equivalent_monthly"] == Decimal("24.08")
        # 1250 / 12 = 104.1666...
        assert annual_price("professional", 50)["equivalent_monthly"] == Decimal("104.17")

    def test_annual_never_exceeds_twelve_months(self):
        for plan in PAID_PLANS:
            tiers = PLAN_PRICING[plan]
            assert tiers["annual"]["unit_rate"] <= tiers["monthly"]["unit_rate"] * 12
            assert tiers["annual"]["minimum"] <= tiers["monthly"]["minimum"] * 12
            for units in (0, 1, 19, 20, 100, 500):
                assert annual_price(plan, units)["annual"] <= monthly_price(plan, units) * 12


class TestValidation:
    @pytest.mark.parametrize("plan", ["trial", "cancelled", "gold", "", None])
    def test_rejects_unknown_plan(self, plan):
        with pytest.raises(ValidationError) as exc:
            monthly_price(plan, 10)
        assert exc.value.status_code == 400
        assert exc.value.context["field"] == "plan"

    @pytest.mark.parametrize("units", [-1, 2.5, "10", None, True])
    def test_rejects_bad_unit_count(self, units):
        with pytest.raises(ValidationError):
            monthly_price("starter", units)

    def test_rejects_bad_cycle(self):
        with pytest.raises(ValidationError):
            price_for_cycle("starter", "weekly", 10)


class TestHelpers:
    def test_price_for_cycle_dispatches(self):
        assert price_for_cycle("enterprise", "monthly", 40) == Decimal("140.00")
        assert price_for_cycle("enterprise", "annual", 40) == Decimal("1400.00")

    def test_recurring_interval(self):
        assert recurring_interval("monthly") == "month"
        assert recurring_interval("annual") == "year"

    def test_minor_units(self):
        assert to_minor_units(Decimal("92.50")) == 9250
        assert to_minor_units(Decimal("0.005")) == 1
        assert to_minor_units(Decimal("1400")) == 140000

    def test_round_money_half_up(self):
        assert round_money(Decimal("2.345")) == Decimal("2.35")
        assert round_money(Decimal("2.344")) == Decimal("2.34")
