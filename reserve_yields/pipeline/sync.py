from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Any, Callable, Iterable, List, Optional

from reserve_yields.analytics.reconciliation import ReconciliationReport, ReconciliationValidator
from reserve_yields.config import AppConfig, MarketConfig
from reserve_yields.db import store
from reserve_yields.errors import ReconciliationMismatch
from reserve_yields.pipeline.collect import SnapshotCollector
from reserve_yields.pipeline.process import SnapshotProcessor

logger = logging.getLogger(__name__)

BACKFILL = "backfill"
LIVE_ONLY = "live_only"


class SyncOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        conn: sqlite3.Connection,
        collector: SnapshotCollector,
        processor: SnapshotProcessor,
        validator: ReconciliationValidator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.conn = conn
        self.collector = collector
        self.processor = processor
        self.validator = validator
        self.clock = clock

    def strategy(self, market: MarketConfig) -> str:
        if market.historical_source != "trusted" or not market.subgraph_id:
            return LIVE_ONLY
        if self.validator.is_unreliable(market.key):
            return LIVE_ONLY
        return BACKFILL

    def should_audit(self, market: MarketConfig) -> bool:
        if not self.config.sync.audit:
            return False
        if market.historical_source != "trusted" or not market.subgraph_id:
            return False
        return not self.validator.is_pinned(market.key)

    async def audit_market(self, market: MarketConfig) -> ReconciliationReport:
        live, _ = await self.collector.live_reserves(market)
        _, historical = await self.collector.historical_reserves(market, int(self.clock()))
        return self.validator.audit(market.key, live, historical)

    async def sync_market(self, market: MarketConfig) -> dict[str, Any]:
        strategy = self.strategy(market)
        result: dict[str, Any] = {"strategy": strategy, "collected": 0, "skipped": 0}
        if self.should_audit(market):
            try:
                report = await self.audit_market(market)
                self.validator.enforce(report)
            except ReconciliationMismatch as exc:
                result.update({"strategy": LIVE_ONLY, "reliable": False, "reasons": exc.reasons})
                return result
            except Exception as exc:  # noqa: BLE001
                logger.warning("Audit failed market=%s error=%s", market.key, exc)
                result.update({"strategy": LIVE_ONLY, "audit_error": str(exc)})
                return result
            result["reliable"] = True
            if strategy == LIVE_ONLY:
                # cleared this run; backfill resumes on the next one
                logger.info("Cleared unreliable flag market=%s", market.key)
                result["cleared"] = True
                return result
        if strategy == BACKFILL:
            result.update(await self.collector.collect_missing_data(market, self.config.backfill.days))
        return result

    async def _run_body(self, markets: List[MarketConfig], diagnostics: dict[str, Any]) -> None:
        daily = await self.collector.collect_daily(markets)
        diagnostics["live_collected"] = daily["collected"]
        diagnostics["live_failed"] = daily["failed"]
        diagnostics["live_stale"] = daily["stale"]

        succeeded = 0
        failed = 0
        per_market: dict[str, Any] = {}
        for market in markets:
            try:
                per_market[market.key] = await self.sync_market(market)
                succeeded += 1
            except Exception as exc:  # noqa: BLE001
                failed += 1
                per_market[market.key] = {"error": str(exc)}
                logger.warning("Sync failed market=%s error=%s", market.key, exc)
        diagnostics["markets"] = per_market
        diagnostics["markets_succeeded"] = succeeded
        diagnostics["markets_failed"] = failed
        diagnostics["backfill_collected"] = sum(item.get("collected", 0) for item in per_market.values())

        processed = self.processor.process_pending()
        diagnostics["snapshots_processed"] = processed["snapshots"]
        diagnostics["assets_processed"] = processed["processed"]
        diagnostics["processing_failed"] = processed["failed"]

    async def run(
        self,
        markets: Optional[Iterable[MarketConfig]] = None,
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        selected = list(markets) if markets is not None else list(self.config.markets)
        timeout_s = timeout_s if timeout_s is not None else self.config.sync.timeout_s
        run_date = self.collector.today().isoformat()
        run_id = store.start_run(self.conn, run_date)
        diagnostics: dict[str, Any] = {"run_id": run_id, "markets_total": len(selected)}
        status = "success"
        error_message = None
        try:
            await asyncio.wait_for(self._run_body(selected, diagnostics), timeout=timeout_s)
        except asyncio.TimeoutError:
            status = "timeout"
            error_message = f"Sync exceeded {timeout_s}s"
            logger.warning("Sync timed out run_id=%d timeout=%s", run_id, timeout_s)
        except Exception as exc:  # noqa: BLE001
            store.finish_run(self.conn, run_id, "failed", str(exc))
            raise
        diagnostics["status"] = status
        diagnostics["cache"] = self.collector.cache.stats()
        store.insert_run_diagnostics(self.conn, run_id, diagnostics)
        store.finish_run(self.conn, run_id, status, error_message)
        logger.info(
            "Sync summary run_id=%d status=%s markets=%d succeeded=%s failed=%s live_collected=%s backfill_collected=%s",
            run_id,
            status,
            len(selected),
            diagnostics.get("markets_succeeded", 0),
            diagnostics.get("markets_failed", 0),
            diagnostics.get("live_collected", 0),
            diagnostics.get("backfill_collected", 0),
        )
        return diagnostics
