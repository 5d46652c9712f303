from __future__ import annotations

import logging
import sqlite3
from typing import Any, Mapping

from pydantic import ValidationError

from reserve_yields.calc.numeric import NumericValue
from reserve_yields.calc.rates import SECONDS_PER_DAY, apr_from_indices, utilization_rate
from reserve_yields.db import store
from reserve_yields.models import Reserve

logger = logging.getLogger(__name__)

# higher rank wins when two sources cover the same (market, asset, date)
SOURCE_RANK = {"subgraph": 1, "aavekit": 2}

MAX_RATE_CARRY_DAYS = 2
USD_TOLERANCE = 0.01


def source_rank(source: str | None) -> int:
    return SOURCE_RANK.get(source or "", 0)


def _has_indices(liquidity_index: Any, borrow_index: Any) -> bool:
    try:
        return not NumericValue(liquidity_index or 0).is_zero() and not NumericValue(borrow_index or 0).is_zero()
    except ValueError:
        return False


def approximate_aprs(
    reserve: Reserve,
    timestamp: int,
    previous: Mapping[str, Any] | None,
) -> tuple[float, float, str]:
    if previous is None:
        return 0.0, 0.0, "no_baseline"
    gap_days = (timestamp - int(previous["timestamp"])) / SECONDS_PER_DAY
    if gap_days <= 0 or gap_days > MAX_RATE_CARRY_DAYS:
        return 0.0, 0.0, "gap"
    if _has_indices(reserve.liquidity_index, reserve.variable_borrow_index) and _has_indices(
        previous.get("liquidity_index"), previous.get("variable_borrow_index")
    ):
        return (
            apr_from_indices(previous["liquidity_index"], reserve.liquidity_index, gap_days),
            apr_from_indices(previous["variable_borrow_index"], reserve.variable_borrow_index, gap_days),
            "indices",
        )
    return reserve.supply_apr, reserve.borrow_apr, "current_rate"


class SnapshotProcessor:
    def __init__(self, conn: sqlite3.Connection, tolerance_usd: float = USD_TOLERANCE) -> None:
        self.conn = conn
        self.tolerance_usd = tolerance_usd

    def process_snapshot(self, raw: Mapping[str, Any]) -> dict[str, int]:
        market_key = raw["market_key"]
        snapshot_date = raw["snapshot_date"]
        source = raw["source"]
        timestamp = int(raw["captured_at"])
        counts = {"processed": 0, "skipped": 0, "invalid": 0, "divergent": 0}

        supplied_total = NumericValue(0)
        borrowed_total = NumericValue(0)
        reported_available = NumericValue(0)
        for payload in raw.get("reserves", []):
            try:
                reserve = Reserve.from_payload(payload)
            except ValidationError as exc:
                counts["invalid"] += 1
                logger.warning("Invalid reserve payload market=%s date=%s error=%s", market_key, snapshot_date, exc)
                continue

            supplied_usd = NumericValue(reserve.supplied_tokens).times(reserve.price_usd)
            borrowed_usd = NumericValue(reserve.borrowed_tokens).times(reserve.price_usd)
            available_usd = supplied_usd.minus(borrowed_usd)
            if available_usd < -self.tolerance_usd:
                counts["invalid"] += 1
                logger.warning(
                    "Borrowed exceeds supplied market=%s asset=%s date=%s supplied=%s borrowed=%s",
                    market_key,
                    reserve.symbol,
                    snapshot_date,
                    supplied_usd.to_fixed(2),
                    borrowed_usd.to_fixed(2),
                )
                continue

            supplied_total = supplied_total.plus(supplied_usd)
            borrowed_total = borrowed_total.plus(borrowed_usd)
            reported_usd = NumericValue(reserve.available_liquidity).times(reserve.price_usd)
            reported_available = reported_available.plus(reported_usd)
            if abs(reported_usd.minus(available_usd).to_float()) > self.tolerance_usd:
                counts["divergent"] += 1
                logger.debug(
                    "Available divergence market=%s asset=%s calculated=%s reported=%s",
                    market_key,
                    reserve.symbol,
                    available_usd.to_fixed(2),
                    reported_usd.to_fixed(2),
                )

            existing = store.get_asset_snapshot(self.conn, market_key, reserve.underlying_asset, snapshot_date)
            if existing is not None and source_rank(existing["source"]) >= source_rank(source):
                counts["skipped"] += 1
                continue

            previous = store.get_previous_asset_snapshot(
                self.conn, market_key, reserve.underlying_asset, snapshot_date
            )
            supply_apr, borrow_apr, basis = approximate_aprs(reserve, timestamp, previous)
            store.upsert_asset_snapshot(
                self.conn,
                {
                    "market_key": market_key,
                    "underlying_asset": reserve.underlying_asset,
                    "snapshot_date": snapshot_date,
                    "timestamp": timestamp,
                    "block_number": raw.get("block_number"),
                    "symbol": reserve.symbol,
                    "decimals": reserve.decimals,
                    "supplied_tokens": reserve.supplied_tokens,
                    "borrowed_tokens": reserve.borrowed_tokens,
                    "available_tokens": NumericValue(reserve.supplied_tokens).minus(reserve.borrowed_tokens).to_fixed(
                        reserve.decimals
                    ),
                    "supplied_usd": supplied_usd.to_float(),
                    "borrowed_usd": borrowed_usd.to_float(),
                    "available_usd": available_usd.to_float(),
                    "supply_apr": supply_apr,
                    "borrow_apr": borrow_apr,
                    "utilization": utilization_rate(reserve.borrowed_tokens, reserve.available_liquidity),
                    "price_usd": reserve.price_usd,
                    "liquidity_index": reserve.liquidity_index,
                    "variable_borrow_index": reserve.variable_borrow_index,
                    "source": source,
                    "raw_source": f"{market_key}:{snapshot_date}:{source}",
                },
            )
            counts["processed"] += 1
            logger.debug("Asset snapshot market=%s asset=%s apr_basis=%s", market_key, reserve.symbol, basis)

        available_total = supplied_total.minus(borrowed_total)
        if abs(reported_available.minus(available_total).to_float()) > self.tolerance_usd:
            logger.warning(
                "Available liquidity divergence market=%s date=%s calculated=%s reported=%s reserves=%d",
                market_key,
                snapshot_date,
                available_total.to_fixed(2),
                reported_available.to_fixed(2),
                counts["divergent"],
            )

        existing_point = store.get_market_point(self.conn, market_key, snapshot_date)
        if existing_point is None or source_rank(existing_point["source"]) < source_rank(source):
            store.upsert_market_point(
                self.conn,
                {
                    "market_key": market_key,
                    "snapshot_date": snapshot_date,
                    "timestamp": timestamp,
                    "supplied_usd": supplied_total.to_float(),
                    "borrowed_usd": borrowed_total.to_float(),
                    "available_usd": available_total.to_float(),
                    "source": source,
                },
            )
        store.mark_raw_processed(self.conn, market_key, snapshot_date, source)
        logger.info(
            "Processed snapshot market=%s date=%s source=%s processed=%d skipped=%d invalid=%d",
            market_key,
            snapshot_date,
            source,
            counts["processed"],
            counts["skipped"],
            counts["invalid"],
        )
        return counts

    def process_pending(self, limit: int | None = None) -> dict[str, int]:
        totals = {"snapshots": 0, "failed": 0, "processed": 0, "skipped": 0, "invalid": 0}
        for raw in store.list_pending_raw_snapshots(self.conn, limit):
            try:
                counts = self.process_snapshot(raw)
            except Exception as exc:  # noqa: BLE001
                totals["failed"] += 1
                logger.warning(
                    "Processing failed market=%s date=%s source=%s error=%s",
                    raw["market_key"],
                    raw["snapshot_date"],
                    raw["source"],
                    exc,
                )
                continue
            totals["snapshots"] += 1
            for key in ("processed", "skipped", "invalid"):
                totals[key] += counts[key]
        logger.info(
            "Processing summary snapshots=%d failed=%d processed=%d skipped=%d invalid=%d",
            totals["snapshots"],
            totals["failed"],
            totals["processed"],
            totals["skipped"],
            totals["invalid"],
        )
        return totals
