from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from datetime import date
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional

from reserve_yields.api.indexer import HistoricalMarketAdapter
from reserve_yields.api.live import LiveMarketAdapter
from reserve_yields.api.rpc import BlockResolver
from reserve_yields.config import BackfillConfig, CacheConfig, LiveApiConfig, MarketConfig
from reserve_yields.db import store
from reserve_yields.models import Reserve
from reserve_yields.utils.batch import run_batched
from reserve_yields.utils.cache import CacheLayer
from reserve_yields.utils.time import end_of_day_timestamp, local_today, trailing_dates

logger = logging.getLogger(__name__)


class SnapshotCollector:
    def __init__(
        self,
        conn: sqlite3.Connection,
        live: LiveMarketAdapter,
        cache: CacheLayer,
        historical: HistoricalMarketAdapter | None = None,
        resolvers: Mapping[int, BlockResolver] | None = None,
        live_config: LiveApiConfig | None = None,
        backfill_config: BackfillConfig | None = None,
        today: Callable[[], date] = local_today,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.conn = conn
        self.live = live
        self.cache = cache
        self.historical = historical
        self.resolvers = dict(resolvers or {})
        self.live_config = live_config or LiveApiConfig()
        self.backfill_config = backfill_config or BackfillConfig()
        self.today = today
        self.clock = clock
        self.sleep = sleep

    @property
    def cache_config(self) -> CacheConfig:
        return self.cache.config

    async def live_reserves(self, market: MarketConfig) -> tuple[List[Reserve], bool]:
        async def _load() -> List[Reserve]:
            reserves = await self.live.fetch_reserves(market)
            return await self.live.with_rate_curves(market, reserves)

        result = await self.cache.fetch(f"live:{market.key}", _load, ttl=self.cache_config.live_ttl_s)
        return result.value, result.stale

    async def collect_daily(self, markets: Iterable[MarketConfig]) -> dict[str, Any]:
        snapshot_date = self.today().isoformat()
        collected = 0
        failed = 0
        stale = 0
        errors: dict[str, str] = {}
        for idx, market in enumerate(markets):
            if idx and self.live_config.market_delay_s > 0:
                await self.sleep(self.live_config.market_delay_s)
            try:
                reserves, is_stale = await self.live_reserves(market)
                if is_stale:
                    stale += 1
                    logger.warning("Skipping stale live snapshot market=%s", market.key)
                    continue
                store.upsert_raw_snapshot(
                    self.conn,
                    market.key,
                    snapshot_date,
                    self.live.source,
                    [reserve.to_payload() for reserve in reserves],
                    captured_at=int(self.clock()),
                )
                collected += 1
                logger.info("Collected live snapshot market=%s reserves=%d", market.key, len(reserves))
            except Exception as exc:  # noqa: BLE001
                failed += 1
                errors[market.key] = str(exc)
                logger.warning("Live collection failed market=%s error=%s", market.key, exc)
        logger.info(
            "Collection summary date=%s collected=%d failed=%d stale=%d",
            snapshot_date,
            collected,
            failed,
            stale,
        )
        return {"collected": collected, "failed": failed, "stale": stale, "errors": errors}

    def find_missing_dates(self, market: MarketConfig, days: int) -> List[date]:
        stored = store.get_raw_snapshot_dates(self.conn, market.key)
        return [day for day in trailing_dates(self.today(), days) if day.isoformat() not in stored]

    async def pool_id(self, market: MarketConfig) -> str:
        if self.historical is None:
            raise ValueError("No historical adapter configured")
        result = await self.cache.fetch(
            f"pool:{market.key}",
            lambda: self.historical.resolve_pool_id(market),
            ttl=self.cache_config.mapping_ttl_s,
        )
        return result.value

    def resolver_for(self, market: MarketConfig) -> BlockResolver:
        resolver = self.resolvers.get(market.chain_id)
        if resolver is None:
            raise ValueError(f"No RPC endpoints for chain {market.chain_id}")
        return resolver

    async def historical_reserves(
        self,
        market: MarketConfig,
        timestamp: int,
        pool_id: Optional[str] = None,
    ) -> tuple[int, List[Reserve]]:
        if self.historical is None:
            raise ValueError("No historical adapter configured")
        pool_id = pool_id or await self.pool_id(market)
        resolver = self.resolver_for(market)
        block = await self.cache.with_retry(lambda: resolver.resolve_block(timestamp))
        result = await self.cache.fetch(
            f"reserves:{market.key}:{block}",
            lambda: self.historical.fetch_reserves_at(market, pool_id, block),
            ttl=self.cache_config.snapshot_ttl_s,
        )
        if result.stale:
            raise RuntimeError(f"Stale reserves for {market.key} at block {block}")
        return block, result.value

    async def collect_date(self, market: MarketConfig, day: date, pool_id: str) -> int:
        timestamp = min(end_of_day_timestamp(day), int(self.clock()))
        block, reserves = await self.historical_reserves(market, timestamp, pool_id)
        store.upsert_raw_snapshot(
            self.conn,
            market.key,
            day.isoformat(),
            self.historical.source,
            [reserve.to_payload() for reserve in reserves],
            captured_at=timestamp,
            block_number=block,
        )
        return block

    async def collect_missing_data(self, market: MarketConfig, days: int | None = None) -> dict[str, int]:
        days = days or self.backfill_config.days
        missing = self.find_missing_dates(market, days)
        if not missing:
            logger.info("Backfill market=%s nothing missing days=%d", market.key, days)
            return {"collected": 0, "skipped": 0}
        pool_id = await self.pool_id(market)

        results = await run_batched(
            missing,
            lambda day: self.collect_date(market, day, pool_id),
            batch_size=self.backfill_config.batch_size,
            delay_s=self.backfill_config.batch_delay_s,
            sleep=self.sleep,
        )
        collected = 0
        skipped = 0
        for day, outcome in results:
            if isinstance(outcome, BaseException):
                skipped += 1
                logger.warning("Backfill date failed market=%s date=%s error=%s", market.key, day, outcome)
            else:
                collected += 1
        logger.info(
            "Backfill summary market=%s missing=%d collected=%d skipped=%d",
            market.key,
            len(missing),
            collected,
            skipped,
        )
        return {"collected": collected, "skipped": skipped}
