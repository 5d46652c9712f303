from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, ValidationError

from reserve_yields.api.graphql import GraphQLClient
from reserve_yields.calc.pricing import PriceNormalizer
from reserve_yields.config import LiveApiConfig, MarketConfig
from reserve_yields.errors import UpstreamSchemaMismatch
from reserve_yields.models import RateCurve, Reserve

logger = logging.getLogger(__name__)

RESERVES_QUERY = """
query Reserves($request: MarketRequest!) {
  market(request: $request) {
    reserves {
      underlyingToken { address symbol name decimals imageUrl }
      supplyInfo { apy { value } total { value } }
      borrowInfo {
        apy { value }
        total { amount { value } }
        availableLiquidity { amount { value } }
      }
      size { amount { value } }
      usdExchangeRate
    }
  }
}
"""

RATE_CURVE_QUERY = """
query ReserveParams($reserveRequest: ReserveRequest!) {
  reserve(request: $reserveRequest) {
    borrowInfo {
      optimalUsageRate { value }
      baseVariableBorrowRate { value }
      variableRateSlope1 { value }
      variableRateSlope2 { value }
      reserveFactor { value }
    }
  }
}
"""


class _Value(BaseModel):
    value: str


class _Amount(BaseModel):
    amount: _Value


class _Token(BaseModel):
    address: str
    symbol: str
    name: str = ""
    decimals: int
    imageUrl: Optional[str] = None


class _SupplyInfo(BaseModel):
    apy: _Value
    total: _Value


class _BorrowInfo(BaseModel):
    apy: _Value
    total: _Amount
    availableLiquidity: _Amount


class _LiveReserve(BaseModel):
    underlyingToken: _Token
    supplyInfo: _SupplyInfo
    borrowInfo: Optional[_BorrowInfo] = None
    size: _Amount
    usdExchangeRate: str


class _LiveMarket(BaseModel):
    reserves: List[_LiveReserve]


class _ReservesResponse(BaseModel):
    market: Optional[_LiveMarket] = None


class _CurveInfo(BaseModel):
    optimalUsageRate: _Value
    baseVariableBorrowRate: _Value
    variableRateSlope1: _Value
    variableRateSlope2: _Value
    reserveFactor: _Value


class _CurveReserve(BaseModel):
    borrowInfo: Optional[_CurveInfo] = None


class _CurveResponse(BaseModel):
    reserve: Optional[_CurveReserve] = None


def parse_reserves_response(data: dict[str, Any]) -> List[_LiveReserve]:
    try:
        parsed = _ReservesResponse.model_validate(data)
    except ValidationError as exc:
        raise UpstreamSchemaMismatch("Unexpected live reserves shape", {"errors": exc.errors()}) from exc
    if parsed.market is None:
        return []
    return parsed.market.reserves


def parse_rate_curve_response(data: dict[str, Any]) -> Optional[RateCurve]:
    try:
        parsed = _CurveResponse.model_validate(data)
    except ValidationError as exc:
        raise UpstreamSchemaMismatch("Unexpected rate curve shape", {"errors": exc.errors()}) from exc
    if parsed.reserve is None or parsed.reserve.borrowInfo is None:
        return None
    info = parsed.reserve.borrowInfo
    return RateCurve(
        optimal_utilization=float(info.optimalUsageRate.value),
        base_rate=float(info.baseVariableBorrowRate.value),
        slope1=float(info.variableRateSlope1.value),
        slope2=float(info.variableRateSlope2.value),
        reserve_factor=float(info.reserveFactor.value),
    )


def to_reserve(item: _LiveReserve, pricing: PriceNormalizer) -> Reserve:
    token = item.underlyingToken
    borrow = item.borrowInfo
    return Reserve(
        underlying_asset=token.address,
        symbol=token.symbol,
        name=token.name,
        decimals=token.decimals,
        image_url=token.imageUrl,
        price_usd=pricing.live_price_usd(item.usdExchangeRate, token.symbol, token.address),
        supplied_tokens=item.supplyInfo.total.value,
        borrowed_tokens=borrow.total.amount.value if borrow else "0",
        available_liquidity=borrow.availableLiquidity.amount.value if borrow else item.size.amount.value,
        supply_apr=float(item.supplyInfo.apy.value),
        borrow_apr=float(borrow.apy.value) if borrow else 0.0,
    )


class LiveMarketAdapter:
    source = "aavekit"

    def __init__(
        self,
        client: GraphQLClient,
        pricing: PriceNormalizer | None = None,
        config: LiveApiConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.pricing = pricing or PriceNormalizer()
        self.config = config or LiveApiConfig()
        self.sleep = sleep

    async def fetch_reserves(self, market: MarketConfig) -> List[Reserve]:
        data = await self.client.query(
            RESERVES_QUERY,
            {"request": {"address": market.pool_address, "chainId": market.chain_id}},
        )
        return [to_reserve(item, self.pricing) for item in parse_reserves_response(data)]

    async def fetch_rate_curve(self, market: MarketConfig, underlying_asset: str) -> Optional[RateCurve]:
        data = await self.client.query(
            RATE_CURVE_QUERY,
            {
                "reserveRequest": {
                    "market": market.pool_address,
                    "underlyingToken": underlying_asset,
                    "chainId": market.chain_id,
                }
            },
        )
        return parse_rate_curve_response(data)

    async def with_rate_curves(self, market: MarketConfig, reserves: List[Reserve]) -> List[Reserve]:
        enriched: List[Reserve] = []
        failed = 0
        for idx, reserve in enumerate(reserves):
            if idx and self.config.curve_pacing_every and idx % self.config.curve_pacing_every == 0:
                await self.sleep(self.config.curve_pacing_s)
            try:
                curve = await self.fetch_rate_curve(market, reserve.underlying_asset)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                logger.warning("Rate curve failed market=%s asset=%s error=%s", market.key, reserve.symbol, exc)
                enriched.append(reserve)
                continue
            if curve is None:
                logger.warning("Rate curve missing market=%s asset=%s", market.key, reserve.symbol)
                enriched.append(reserve)
                continue
            enriched.append(reserve.model_copy(update={"rate_curve": curve}))
        logger.info("Rate curves market=%s reserves=%d failed=%d", market.key, len(reserves), failed)
        return enriched
