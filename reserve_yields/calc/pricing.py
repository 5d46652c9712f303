from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Protocol

from reserve_yields.calc.numeric import NumericValue, NumberLike
from reserve_yields.config import PriceRuleConfig, PricingConfig

logger = logging.getLogger(__name__)

ORACLE_SCALE = 1e8


class PriceRule(Protocol):
    def to_usd(self, raw_price: NumberLike) -> float: ...


@dataclass(frozen=True)
class ScaledPriceRule:
    scale: float = ORACLE_SCALE

    def to_usd(self, raw_price: NumberLike) -> float:
        return NumericValue(raw_price).div(self.scale).to_float()


@dataclass(frozen=True)
class UsdPriceRule:
    def to_usd(self, raw_price: NumberLike) -> float:
        return NumericValue(raw_price).to_float()


@dataclass(frozen=True)
class MagnitudePriceRule:
    """Guess the oracle unit from the size of the raw value.

    Large values are 8-decimal oracle answers; small ones are already USD.
    """

    scale: float = ORACLE_SCALE
    scaled_above: float = 1e6
    usd_below: float = 1000

    def to_usd(self, raw_price: NumberLike) -> float:
        value = NumericValue(raw_price)
        if value >= self.scaled_above:
            return value.div(self.scale).to_float()
        if value < 1:
            return value.to_float()
        if value <= self.usd_below:
            return value.to_float()
        return value.div(self.scale).to_float()


def build_rule(config: PriceRuleConfig) -> PriceRule:
    if config.rule == "scaled":
        return ScaledPriceRule(config.scale)
    if config.rule == "usd":
        return UsdPriceRule()
    return MagnitudePriceRule(config.scale, config.scaled_above, config.usd_below)


class PriceNormalizer:
    def __init__(self, config: PricingConfig | None = None) -> None:
        config = config or PricingConfig()
        self.primary_chain_id = config.primary_chain_id
        self.rules: Dict[int, PriceRule] = {config.primary_chain_id: ScaledPriceRule()}
        for chain_id, rule_config in config.chain_rules.items():
            self.rules[int(chain_id)] = build_rule(rule_config)
        self.default_rule: PriceRule = MagnitudePriceRule()
        self.stablecoins = StablecoinRegistry(config.stablecoins, config.stablecoin_addresses)

    def rule_for(self, chain_id: int) -> PriceRule:
        return self.rules.get(chain_id, self.default_rule)

    def historical_price_usd(self, raw_price: NumberLike, chain_id: int) -> float:
        return self.rule_for(chain_id).to_usd(raw_price)

    def live_price_usd(self, usd_exchange_rate: NumberLike, symbol: str, address: str = "") -> float:
        price = NumericValue(usd_exchange_rate).to_float()
        # both branches are USD denominated; the live path never rescales
        if self.stablecoins.is_stablecoin(symbol, address):
            logger.debug("Live price %s=%s format=usd (stablecoin)", symbol, price)
        else:
            logger.debug("Live price %s=%s format=usd", symbol, price)
        return price


class StablecoinRegistry:
    def __init__(self, symbols: Iterable[str], addresses: Iterable[str] = ()) -> None:
        self.symbols = {symbol.upper() for symbol in symbols}
        self.addresses = {address.lower() for address in addresses}

    def is_stablecoin(self, symbol: str, address: str = "") -> bool:
        if address and address.lower() in self.addresses:
            return True
        return (symbol or "").upper() in self.symbols
