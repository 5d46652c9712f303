from __future__ import annotations

import pytest

from reserve_yields.calc.pricing import MagnitudePriceRule, PriceNormalizer, ScaledPriceRule, StablecoinRegistry
from reserve_yields.config import PriceRuleConfig, PricingConfig


def test_primary_chain_always_scales() -> None:
    pricing = PriceNormalizer()
    assert pricing.historical_price_usd("250000000000", 1) == pytest.approx(2500.0)
    assert pricing.historical_price_usd("100000000", 1) == pytest.approx(1.0)
    assert isinstance(pricing.rule_for(1), ScaledPriceRule)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("200000000000", 2000.0),
        ("0.5", 0.5),
        ("1", 1.0),
        ("999.5", 999.5),
        ("5000", 0.00005),
    ],
)
def test_other_chains_use_magnitude_rule(raw: str, expected: float) -> None:
    pricing = PriceNormalizer()
    assert isinstance(pricing.rule_for(137), MagnitudePriceRule)
    assert pricing.historical_price_usd(raw, 137) == pytest.approx(expected)


def test_chain_rule_overrides() -> None:
    config = PricingConfig(chain_rules={137: PriceRuleConfig(rule="usd"), 10: PriceRuleConfig(rule="scaled")})
    pricing = PriceNormalizer(config)
    assert pricing.historical_price_usd("5000", 137) == pytest.approx(5000.0)
    assert pricing.historical_price_usd("500", 10) == pytest.approx(0.000005)


def test_stablecoin_lookup_by_symbol_or_address() -> None:
    registry = StablecoinRegistry(["USDC", "crvUSD"], ["0xABC"])
    assert registry.is_stablecoin("usdc")
    assert registry.is_stablecoin("CRVUSD")
    assert registry.is_stablecoin("XYZ", "0xabc")
    assert not registry.is_stablecoin("WETH", "0xdef")


def test_live_prices_are_already_usd() -> None:
    pricing = PriceNormalizer()
    assert pricing.live_price_usd("0.9998", "USDC") == pytest.approx(0.9998)
    assert pricing.live_price_usd("3133.4255", "WETH") == pytest.approx(3133.4255)


def test_magnitude_thresholds_come_from_chain_rule() -> None:
    config = PricingConfig(chain_rules={10: {"rule": "magnitude", "usd_below": 100, "scaled_above": 1e5}})
    pricing = PriceNormalizer(config)
    assert pricing.historical_price_usd("500", 10) == pytest.approx(5e-06)
    assert pricing.historical_price_usd("50", 10) == pytest.approx(50.0)
    assert pricing.historical_price_usd("200000", 10) == pytest.approx(0.002)
    assert pricing.historical_price_usd("500", 137) == pytest.approx(500.0)
