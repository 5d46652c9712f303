from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, field_validator


class RunConfig(BaseModel):
    date_override: Optional[str] = None
    timezone: str = "UTC"
    db_path: str = "data/reserve_yields.sqlite"


class MarketConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    display_name: str = ""
    pool_address: str
    chain_id: int
    subgraph_id: Optional[str] = None
    historical_source: Literal["trusted", "untrusted", "none"] = "none"

    @field_validator("pool_address")
    @classmethod
    def _lowercase_address(cls, value: str) -> str:
        return value.strip().lower()


class LiveApiConfig(BaseModel):
    url: str = "https://api.v3.aave.com/graphql"
    request_timeout_s: int = 15
    curve_pacing_every: int = 10
    curve_pacing_s: float = 1.0
    market_delay_s: float = 0.5


class IndexerConfig(BaseModel):
    url_template: str = "https://gateway.thegraph.com/api/{api_key}/subgraphs/id/{subgraph_id}"
    api_key: str = ""
    request_timeout_s: int = 30


class RpcConfig(BaseModel):
    endpoints: Dict[int, List[str]] = {}
    request_timeout_s: float = 10
    search_request_timeout_s: float = 5
    search_timeout_s: float = 30
    max_iterations: int = 20


class CacheConfig(BaseModel):
    live_ttl_s: int = 60
    snapshot_ttl_s: int = 6 * 3600
    mapping_ttl_s: int = 24 * 3600
    max_entries: int = 1000
    retry_max: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 8.0


class BackfillConfig(BaseModel):
    days: int = 365
    batch_size: int = 10
    batch_delay_s: float = 1.0


class ReconciliationConfig(BaseModel):
    max_relative_diff: float = 0.5
    max_missing_fraction: float = 0.1
    price_tolerance: float = 0.1


class PriceRuleConfig(BaseModel):
    rule: Literal["scaled", "magnitude", "usd"] = "magnitude"
    scale: float = 1e8
    scaled_above: float = 1e6
    usd_below: float = 1000


class PricingConfig(BaseModel):
    primary_chain_id: int = 1
    chain_rules: Dict[int, PriceRuleConfig] = {}
    stablecoins: List[str] = [
        "USDC",
        "USDT",
        "DAI",
        "FRAX",
        "GUSD",
        "USDP",
        "LUSD",
        "sUSD",
        "BUSD",
        "TUSD",
        "PYUSD",
        "USDG",
        "EURC",
        "GHO",
        "RLUSD",
        "USDS",
        "USDe",
        "USDtb",
        "crvUSD",
        "mUSD",
    ]
    stablecoin_addresses: List[str] = []


class SyncConfig(BaseModel):
    unreliable_markets: List[str] = []
    audit: bool = True
    timeout_s: float = 900


class AppConfig(BaseModel):
    run: RunConfig = RunConfig()
    markets: List[MarketConfig]
    live_api: LiveApiConfig = LiveApiConfig()
    indexer: IndexerConfig = IndexerConfig()
    rpc: RpcConfig = RpcConfig()
    cache: CacheConfig = CacheConfig()
    backfill: BackfillConfig = BackfillConfig()
    reconciliation: ReconciliationConfig = ReconciliationConfig()
    pricing: PricingConfig = PricingConfig()
    sync: SyncConfig = SyncConfig()

    def market(self, key: str) -> MarketConfig:
        for market in self.markets:
            if market.key == key:
                return market
        raise KeyError(f"Unknown market: {key}")


def load_config(path: str | Path) -> AppConfig:
    data: Dict[str, Any] = {}
    config_path = Path(path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
            if isinstance(loaded, dict):
                data = loaded
    if "markets" not in data:
        raise ValueError("config.yaml must include markets")
    return AppConfig(**data)
