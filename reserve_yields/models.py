from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from reserve_yields.calc.numeric import NumericValue


class RateCurve(BaseModel):
    model_config = ConfigDict(frozen=True)

    optimal_utilization: float
    base_rate: float
    slope1: float
    slope2: float
    reserve_factor: Optional[float] = None


class Reserve(BaseModel):
    """Canonical reserve record shared by the live and historical adapters.

    Token amounts are human-readable decimal strings (already divided by
    10**decimals); rates are yearly fractions (0.05 == 5%).
    """

    underlying_asset: str
    symbol: str
    name: str = ""
    decimals: int
    price_usd: float
    supplied_tokens: str
    borrowed_tokens: str
    available_liquidity: str
    supply_apr: float = 0.0
    borrow_apr: float = 0.0
    liquidity_index: str = "0"
    variable_borrow_index: str = "0"
    image_url: Optional[str] = None
    rate_curve: Optional[RateCurve] = None

    @field_validator("underlying_asset")
    @classmethod
    def _lowercase_asset(cls, value: str) -> str:
        return value.strip().lower()

    def supplied_usd(self) -> float:
        return NumericValue(self.supplied_tokens).times(self.price_usd).to_float()

    def borrowed_usd(self) -> float:
        return NumericValue(self.borrowed_tokens).times(self.price_usd).to_float()

    def available_usd(self) -> float:
        return NumericValue(self.available_liquidity).times(self.price_usd).to_float()

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Reserve:
        return cls.model_validate(payload)
