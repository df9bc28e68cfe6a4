from decimal import Decimal

import pytest

from kleanly.services.pricing import PricingEngine


@pytest.fixture
def pricing():
    return PricingEngine(rate_per_km2=15, minimum=5, currency="gbp")


def test_zero_area_costs_the_minimum(pricing):
    assert pricing.monthly_price(0) == Decimal("5.00")


def test_six_km2_at_fifteen_is_ninety(pricing):
    assert pricing.monthly_price(6) == Decimal("90.00")


def test_price_is_monotonic_in_area(pricing):
    areas = [0, 0.01, 0.2, 0.3333, 0.5, 1, 2.75, 6, 10, 125.5]
    prices = [pricing.monthly_price(a) for a in areas]
    assert prices == sorted(prices)


def test_rounds_half_up_to_pence(pricing):
    assert pricing.monthly_price(1.0003) == Decimal("15.00")  # 15.0045
    assert pricing.monthly_price(1.0007) == Decimal("15.01")  # 15.0105
    assert pricing.to_minor_units(Decimal("90.00")) == 9000


def test_rejects_non_finite_area(pricing):
    with pytest.raises(ValueError):
        pricing.monthly_price(float("nan"))


def test_total_price_multiplies_months(pricing):
    assert pricing.total_price(Decimal("90.00"), 3) == Decimal("270.00")
    with pytest.raises(ValueError):
        pricing.total_price(Decimal("90.00"), 0)


def test_zero_decimal_currency():
    yen = PricingEngine(rate_per_km2=2000, minimum=500, currency="JPY")
    assert yen.monthly_price(1.25) == Decimal("2500")
    assert yen.to_minor_units(Decimal("2500")) == 2500


def test_tier_overrides_most_specific_first():
    pricing = PricingEngine(
        rate_per_km2=15,
        minimum=5,
        overrides={
            "bins:1": {"rate": 30, "min": 10},
            "bins:*": {"rate": 20},
            "*:2": {"rate": 8, "min": 2},
        },
    )
    assert pricing.monthly_price(1, "bins", 1) == Decimal("30.00")
    assert pricing.monthly_price(1, "bins", 3) == Decimal("20.00")
    assert pricing.monthly_price(0, "bins", 3) == Decimal("5.00")  # min falls back to default
    assert pricing.monthly_price(1, "windows", 2) == Decimal("8.00")
    assert pricing.monthly_price(1, "windows", 1) == Decimal("15.00")


def test_from_config_reads_app_settings(app):
    pricing = PricingEngine.from_config(app.config)
    assert pricing.currency == "gbp"
    assert pricing.monthly_price(0) == Decimal("5.00")
