from __future__ import annotations

import logging
from typing import Callable, Dict, List

from pydantic import BaseModel, ValidationError

from reserve_yields.api.graphql import GraphQLClient
from reserve_yields.calc.numeric import NumericValue
from reserve_yields.calc.pricing import PriceNormalizer
from reserve_yields.config import IndexerConfig, MarketConfig
from reserve_yields.errors import PoolNotFound, UpstreamSchemaMismatch
from reserve_yields.models import Reserve

logger = logging.getLogger(__name__)

RAY_DECIMALS = 27

POOL_QUERY = """
query PoolByAddress($poolAddress: String!) {
  pools(where: { pool: $poolAddress }, first: 1) { id pool }
}
"""

RESERVES_AT_BLOCK_QUERY = """
query ReservesAtBlock($poolId: ID!, $block: Block_height!) {
  reserves(where: { pool: $poolId }, block: $block) {
    underlyingAsset
    symbol
    name
    decimals
    totalATokenSupply
    availableLiquidity
    totalCurrentVariableDebt
    liquidityIndex
    variableBorrowIndex
    liquidityRate
    variableBorrowRate
    price { priceInEth }
  }
}
"""


class _Pool(BaseModel):
    id: str
    pool: str


class _PoolsResponse(BaseModel):
    pools: List[_Pool]


class _Price(BaseModel):
    priceInEth: str


class _IndexedReserve(BaseModel):
    underlyingAsset: str
    symbol: str
    name: str = ""
    decimals: int
    totalATokenSupply: str
    availableLiquidity: str
    totalCurrentVariableDebt: str
    liquidityIndex: str
    variableBorrowIndex: str
    liquidityRate: str
    variableBorrowRate: str
    price: _Price


class _ReservesResponse(BaseModel):
    reserves: List[_IndexedReserve]


def _token_amount(raw: str, decimals: int) -> str:
    return NumericValue.from_onchain(raw, decimals).to_fixed(decimals)


def _ray_rate(raw: str) -> float:
    return NumericValue.from_onchain(raw, RAY_DECIMALS).to_float()


class HistoricalMarketAdapter:
    source = "subgraph"

    def __init__(
        self,
        config: IndexerConfig | None = None,
        pricing: PriceNormalizer | None = None,
        client_factory: Callable[[str], GraphQLClient] | None = None,
    ) -> None:
        self.config = config or IndexerConfig()
        self.pricing = pricing or PriceNormalizer()
        self.client_factory = client_factory or (lambda url: GraphQLClient(url, self.config.request_timeout_s))
        self._clients: Dict[str, GraphQLClient] = {}

    def client_for(self, market: MarketConfig) -> GraphQLClient:
        if not market.subgraph_id:
            raise ValueError(f"Market {market.key} has no indexer deployment")
        url = self.config.url_template.format(api_key=self.config.api_key, subgraph_id=market.subgraph_id)
        if url not in self._clients:
            self._clients[url] = self.client_factory(url)
        return self._clients[url]

    async def resolve_pool_id(self, market: MarketConfig) -> str:
        data = await self.client_for(market).query(POOL_QUERY, {"poolAddress": market.pool_address})
        try:
            parsed = _PoolsResponse.model_validate(data)
        except ValidationError as exc:
            raise UpstreamSchemaMismatch("Unexpected pools shape", {"errors": exc.errors()}) from exc
        if not parsed.pools:
            raise PoolNotFound(market.key, market.pool_address)
        return parsed.pools[0].id

    async def fetch_reserves_at(self, market: MarketConfig, pool_id: str, block_number: int) -> List[Reserve]:
        data = await self.client_for(market).query(
            RESERVES_AT_BLOCK_QUERY,
            {"poolId": pool_id, "block": {"number": int(block_number)}},
        )
        try:
            parsed = _ReservesResponse.model_validate(data)
        except ValidationError as exc:
            raise UpstreamSchemaMismatch("Unexpected reserves shape", {"errors": exc.errors()}) from exc
        return [self._to_reserve(item, market) for item in parsed.reserves]

    def _to_reserve(self, item: _IndexedReserve, market: MarketConfig) -> Reserve:
        return Reserve(
            underlying_asset=item.underlyingAsset,
            symbol=item.symbol,
            name=item.name,
            decimals=item.decimals,
            price_usd=self.pricing.historical_price_usd(item.price.priceInEth, market.chain_id),
            supplied_tokens=_token_amount(item.totalATokenSupply, item.decimals),
            borrowed_tokens=_token_amount(item.totalCurrentVariableDebt, item.decimals),
            available_liquidity=_token_amount(item.availableLiquidity, item.decimals),
            supply_apr=_ray_rate(item.liquidityRate),
            borrow_apr=_ray_rate(item.variableBorrowRate),
            liquidity_index=item.liquidityIndex,
            variable_borrow_index=item.variableBorrowIndex,
        )
