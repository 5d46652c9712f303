from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping

from reserve_yields.calc.pricing import StablecoinRegistry
from reserve_yields.calc.rates import (
    SERIES_DAYS,
    average_lending_rates,
    liquidity_impact,
    thirty_day_apr_series,
    thirty_day_apr_stats,
    utilization_rate,
)
from reserve_yields.calc.series import change_windows, filter_by_window, market_totals, monthly_rollup
from reserve_yields.config import MarketConfig
from reserve_yields.db import store
from reserve_yields.models import Reserve
from reserve_yields.pipeline.collect import SnapshotCollector

DEFAULT_SCENARIO_AMOUNTS = (1_000_000, 10_000_000, 50_000_000)


def _dated(rows: Iterable[Mapping[str, Any]]) -> List[dict[str, Any]]:
    return [{**row, "date": row["snapshot_date"]} for row in rows]


def apr_30d_for_market(conn: sqlite3.Connection, market_key: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    since = (now - timedelta(days=SERIES_DAYS + 1)).date().isoformat()
    grouped: Dict[str, List[dict[str, Any]]] = {}
    for row in _dated(store.list_asset_snapshots(conn, market_key, since=since)):
        grouped.setdefault(row["underlying_asset"], []).append(row)

    assets: Dict[str, Any] = {}
    with_series = 0
    for asset, rows in grouped.items():
        supply = thirty_day_apr_series(rows, now=now, value_key="supply_apr")
        borrow = thirty_day_apr_series(rows, now=now, value_key="borrow_apr")
        if supply or borrow:
            with_series += 1
        assets[asset] = {
            "symbol": rows[-1]["symbol"],
            "supply_series": supply,
            "borrow_series": borrow,
            "supply_stats": thirty_day_apr_stats(supply, "supply_apr"),
            "borrow_stats": thirty_day_apr_stats(borrow, "borrow_apr"),
        }
    return {
        "market_key": market_key,
        "assets": assets,
        "meta": {
            "assets": len(assets),
            "with_series": with_series,
            "without_series": len(assets) - with_series,
            "generated_at": now.isoformat(),
        },
    }


def market_timeseries(
    conn: sqlite3.Connection,
    market_key: str,
    window: str = "30d",
    now: datetime | None = None,
) -> List[Mapping[str, Any]]:
    return filter_by_window(_dated(store.list_market_timeseries(conn, market_key)), window, now)


def market_trends(conn: sqlite3.Connection, market_key: str, as_of: str | None = None) -> dict[str, Any]:
    points = _dated(store.list_market_timeseries(conn, market_key))
    per_asset: Dict[str, List[dict[str, Any]]] = {}
    for row in _dated(store.list_asset_snapshots(conn, market_key)):
        per_asset.setdefault(row["underlying_asset"], []).append(row)
    keys = ("supplied_usd", "borrowed_usd")
    return {
        "market_key": market_key,
        "totals": change_windows(points, keys, as_of),
        "assets": {
            asset: {"symbol": rows[-1]["symbol"], "changes": change_windows(rows, keys, as_of)}
            for asset, rows in per_asset.items()
        },
    }


def reserve_history(
    conn: sqlite3.Connection,
    market_key: str,
    underlying_asset: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    daily = _dated(store.list_asset_snapshots(conn, market_key, underlying_asset))
    return {
        "market_key": market_key,
        "underlying_asset": underlying_asset.lower(),
        "daily": daily,
        "monthly": monthly_rollup(daily),
        "average_rates": average_lending_rates(daily, now=now),
    }


def reserve_liquidity_impact(
    reserve: Reserve,
    amounts: Iterable[float] = DEFAULT_SCENARIO_AMOUNTS,
) -> List[dict[str, Any]]:
    if reserve.rate_curve is None:
        raise ValueError(f"No rate curve for {reserve.symbol}")
    borrowed_usd = reserve.borrowed_usd()
    available_usd = reserve.available_usd()
    current = {
        "borrowed_usd": borrowed_usd,
        "available_usd": available_usd,
        "utilization": utilization_rate(borrowed_usd, available_usd),
        "supply_apr": reserve.supply_apr,
        "borrow_apr": reserve.borrow_apr,
    }
    results: List[dict[str, Any]] = []
    for amount in amounts:
        for action in ("Deposit", "Withdraw", "Borrow", "Repay"):
            impact = liquidity_impact(current, {"action": action, "amount_usd": amount}, reserve.rate_curve)
            results.append({"action": action, "amount_usd": amount, **impact})
    return results


async def current_reserves(collector: SnapshotCollector, market: MarketConfig) -> dict[str, Any]:
    reserves, stale = await collector.live_reserves(market)
    return {
        "market_key": market.key,
        "stale": stale,
        "totals": market_totals(reserves),
        "reserves": [reserve.to_payload() for reserve in reserves],
    }


def stablecoin_overview(
    conn: sqlite3.Connection,
    markets: Iterable[MarketConfig],
    registry: StablecoinRegistry,
) -> List[dict[str, Any]]:
    """Latest stored state of every stablecoin, grouped across markets."""
    grouped: Dict[tuple[str, str], dict[str, Any]] = {}
    for market in markets:
        for row in store.list_latest_asset_snapshots(conn, market.key):
            if not registry.is_stablecoin(row["symbol"], row["underlying_asset"]):
                continue
            key = (row["symbol"], row["underlying_asset"])
            entry = grouped.setdefault(
                key,
                {
                    "symbol": row["symbol"],
                    "address": row["underlying_asset"],
                    "decimals": row["decimals"],
                    "markets": [],
                    "total_supplied_usd": 0.0,
                    "total_borrowed_usd": 0.0,
                },
            )
            entry["markets"].append(
                {
                    "market_key": market.key,
                    "market_name": market.display_name or market.key,
                    "snapshot_date": row["snapshot_date"],
                    "supplied_usd": row["supplied_usd"] or 0.0,
                    "borrowed_usd": row["borrowed_usd"] or 0.0,
                    "supply_apr": row["supply_apr"],
                    "borrow_apr": row["borrow_apr"],
                    "utilization": row["utilization"],
                }
            )
            entry["total_supplied_usd"] += row["supplied_usd"] or 0.0
            entry["total_borrowed_usd"] += row["borrowed_usd"] or 0.0
    return sorted(grouped.values(), key=lambda item: item["total_supplied_usd"], reverse=True)
