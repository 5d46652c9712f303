from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from reserve_yields.analytics.reconciliation import ReconciliationValidator
from reserve_yields.api.graphql import GraphQLClient
from reserve_yields.api.indexer import HistoricalMarketAdapter
from reserve_yields.api.live import LiveMarketAdapter
from reserve_yields.api.rpc import BlockResolver
from reserve_yields.calc.pricing import PriceNormalizer
from reserve_yields.config import AppConfig, load_config
from reserve_yields.db import store
from reserve_yields.pipeline.collect import SnapshotCollector
from reserve_yields.pipeline.process import SnapshotProcessor
from reserve_yields.pipeline.sync import SyncOrchestrator
from reserve_yields.utils.cache import CacheLayer
from reserve_yields.utils.time import local_today, parse_date

logger = logging.getLogger(__name__)


def build_orchestrator(config: AppConfig, conn, cache: CacheLayer | None = None) -> SyncOrchestrator:
    cache = cache or CacheLayer(config.cache)
    pricing = PriceNormalizer(config.pricing)
    live = LiveMarketAdapter(
        GraphQLClient(config.live_api.url, config.live_api.request_timeout_s),
        pricing,
        config.live_api,
    )
    historical = HistoricalMarketAdapter(config.indexer, pricing)
    resolvers = {
        chain_id: BlockResolver(endpoints, config.rpc)
        for chain_id, endpoints in config.rpc.endpoints.items()
        if endpoints
    }

    override = parse_date(config.run.date_override)
    if override:
        today = lambda: override  # noqa: E731
    else:
        today = lambda: local_today(config.run.timezone)  # noqa: E731

    collector = SnapshotCollector(
        conn,
        live,
        cache,
        historical=historical,
        resolvers=resolvers,
        live_config=config.live_api,
        backfill_config=config.backfill,
        today=today,
    )
    unreliable = set(config.sync.unreliable_markets) | store.get_unreliable_markets(conn)
    validator = ReconciliationValidator(
        config.reconciliation,
        unreliable=unreliable,
        conn=conn,
        pinned=config.sync.unreliable_markets,
    )
    return SyncOrchestrator(config, conn, collector, SnapshotProcessor(conn), validator)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    root = Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yaml")

    conn = store.get_connection(root / config.run.db_path)
    store.init_db(conn)
    try:
        orchestrator = build_orchestrator(config, conn)
        diagnostics = asyncio.run(orchestrator.run())
        logger.info("Run finished status=%s run_id=%s", diagnostics.get("status"), diagnostics.get("run_id"))
    finally:
        conn.close()


if __name__ == "__main__":
    main()
