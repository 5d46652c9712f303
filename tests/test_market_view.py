from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from reserve_yields.analytics import market_view
from reserve_yields.calc.pricing import StablecoinRegistry
from reserve_yields.calc.rates import apr_from_indices
from reserve_yields.config import CacheConfig, MarketConfig
from reserve_yields.db import store
from reserve_yields.errors import UpstreamError
from reserve_yields.models import RateCurve, Reserve
from reserve_yields.pipeline.collect import SnapshotCollector
from reserve_yields.pipeline.process import SnapshotProcessor
from reserve_yields.utils.cache import CacheLayer

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)
MARKET = MarketConfig(key="ethereum-v3", pool_address="0xPool", chain_id=1)


def _setup_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    store.init_db(conn)
    return conn


def _seed(conn: sqlite3.Connection, days_ago: int, borrow_apr: float, supplied: float) -> None:
    day = NOW - timedelta(days=days_ago)
    snapshot_date = day.date().isoformat()
    store.upsert_asset_snapshot(
        conn,
        {
            "market_key": "ethereum-v3",
            "underlying_asset": "0xusdc",
            "snapshot_date": snapshot_date,
            "timestamp": int(day.timestamp()),
            "symbol": "USDC",
            "decimals": 6,
            "supplied_usd": supplied,
            "borrowed_usd": supplied / 2,
            "available_usd": supplied / 2,
            "supply_apr": borrow_apr / 2,
            "borrow_apr": borrow_apr,
            "utilization": 0.5,
            "price_usd": 1.0,
            "liquidity_index": "0",
            "variable_borrow_index": "0",
            "source": "aavekit",
        },
    )
    store.upsert_market_point(
        conn,
        {
            "market_key": "ethereum-v3",
            "snapshot_date": snapshot_date,
            "timestamp": int(day.timestamp()),
            "supplied_usd": supplied,
            "borrowed_usd": supplied / 2,
            "available_usd": supplied / 2,
            "source": "aavekit",
        },
    )


def test_apr_30d_for_market_and_history() -> None:
    conn = _setup_conn()
    _seed(conn, 10, 0.04, 100.0)
    _seed(conn, 1, 0.06, 110.0)
    _seed(conn, 0, 0.0, 120.0)

    result = market_view.apr_30d_for_market(conn, "ethereum-v3", now=NOW)
    entry = result["assets"]["0xusdc"]
    assert len(entry["borrow_series"]) == 30
    assert entry["borrow_stats"]["last"] == pytest.approx(0.06)
    assert entry["borrow_stats"]["min"] == pytest.approx(0.04)
    assert result["meta"] == {
        "assets": 1,
        "with_series": 1,
        "without_series": 0,
        "generated_at": NOW.isoformat(),
    }

    history = market_view.reserve_history(conn, "ethereum-v3", "0xUSDC", now=NOW)
    assert [row["date"] for row in history["daily"]] == ["2024-06-20", "2024-06-29", "2024-06-30"]
    assert history["monthly"][0]["month"] == "2024-06"
    assert history["average_rates"]["1d"]["supply_apr"] == 0.0
    assert history["average_rates"]["30d"]["supply_apr"] is None

    trends = market_view.market_trends(conn, "ethereum-v3")
    assert trends["totals"]["1d"]["supplied_usd"]["delta"] == pytest.approx(10.0)
    assert trends["totals"]["7d"] is None
    assert trends["assets"]["0xusdc"]["changes"]["1d"]["borrowed_usd"]["delta"] == pytest.approx(5.0)

    window = market_view.market_timeseries(conn, "ethereum-v3", "7d", now=NOW)
    assert [point["date"] for point in window] == ["2024-06-29", "2024-06-30"]


def _raw_reserve(liquidity_index: str, borrow_index: str) -> dict:
    return {
        "underlying_asset": "0xusdc",
        "symbol": "USDC",
        "decimals": 6,
        "price_usd": 1.0,
        "supplied_tokens": "1000",
        "borrowed_tokens": "600",
        "available_liquidity": "400",
        "supply_apr": 0.03,
        "borrow_apr": 0.05,
        "liquidity_index": liquidity_index,
        "variable_borrow_index": borrow_index,
    }


def test_average_rates_skip_live_row_without_indices() -> None:
    conn = _setup_conn()
    indices = {}
    for offset in range(30, 0, -1):
        day = NOW - timedelta(days=offset)
        liquidity = str(10**27 + (31 - offset) * 10**23)
        borrow = str(10**27 + (31 - offset) * 3 * 10**23)
        indices[offset] = liquidity
        store.upsert_raw_snapshot(
            conn, "ethereum-v3", day.date().isoformat(), "subgraph", [_raw_reserve(liquidity, borrow)], int(day.timestamp())
        )
    store.upsert_raw_snapshot(
        conn, "ethereum-v3", NOW.date().isoformat(), "aavekit", [_raw_reserve("0", "0")], int(NOW.timestamp())
    )

    SnapshotProcessor(conn).process_pending()
    history = market_view.reserve_history(conn, "ethereum-v3", "0xusdc", now=NOW)

    assert history["daily"][-1]["source"] == "aavekit"
    rates = history["average_rates"]["30d"]
    assert rates["supply_apr"] == pytest.approx(apr_from_indices(indices[30], indices[1], 29))
    assert 0 < rates["supply_apr"] < rates["borrow_apr"] < 1


def test_reserve_liquidity_impact_requires_curve() -> None:
    reserve = Reserve(
        underlying_asset="0xusdc",
        symbol="USDC",
        decimals=6,
        price_usd=1.0,
        supplied_tokens="1000",
        borrowed_tokens="500",
        available_liquidity="500",
        supply_apr=0.02,
        borrow_apr=0.04,
    )
    with pytest.raises(ValueError):
        market_view.reserve_liquidity_impact(reserve)

    curved = reserve.model_copy(
        update={"rate_curve": RateCurve(optimal_utilization=0.9, base_rate=0.0, slope1=0.05, slope2=0.8)}
    )
    results = market_view.reserve_liquidity_impact(curved, amounts=[100])
    assert [row["action"] for row in results] == ["Deposit", "Withdraw", "Borrow", "Repay"]
    assert results[2]["new_utilization"] == pytest.approx(0.6)


class FlakyLive:
    source = "aavekit"

    def __init__(self) -> None:
        self.down = False

    async def fetch_reserves(self, market):
        if self.down:
            raise UpstreamError("live api 502", status_code=502)
        return [
            Reserve(
                underlying_asset="0xusdc",
                symbol="USDC",
                decimals=6,
                price_usd=1.0,
                supplied_tokens="100",
                borrowed_tokens="40",
                available_liquidity="60",
            )
        ]

    async def with_rate_curves(self, market, reserves):
        return reserves


@pytest.mark.asyncio
async def test_current_reserves_surfaces_stale_flag() -> None:
    clock = {"now": 1000.0}

    async def no_sleep(_: float) -> None:
        return None

    live = FlakyLive()
    cache = CacheLayer(CacheConfig(backoff_base_s=0, backoff_max_s=0), clock=lambda: clock["now"], sleep=no_sleep)
    collector = SnapshotCollector(_setup_conn(), live, cache)

    fresh = await market_view.current_reserves(collector, MARKET)
    assert fresh["stale"] is False
    assert fresh["totals"]["available_usd"] == pytest.approx(60.0)

    clock["now"] += 3600
    live.down = True
    stale = await market_view.current_reserves(collector, MARKET)
    assert stale["stale"] is True
    assert stale["reserves"][0]["symbol"] == "USDC"


def _asset_row(market_key: str, asset: str, symbol: str, day: str, supplied: float, borrowed: float) -> dict:
    return {
        "market_key": market_key,
        "underlying_asset": asset,
        "snapshot_date": day,
        "timestamp": int(datetime.fromisoformat(day).replace(tzinfo=timezone.utc).timestamp()),
        "symbol": symbol,
        "decimals": 6,
        "supplied_usd": supplied,
        "borrowed_usd": borrowed,
        "available_usd": supplied - borrowed,
        "supply_apr": 0.03,
        "borrow_apr": 0.05,
        "utilization": borrowed / supplied,
        "price_usd": 1.0,
        "liquidity_index": "0",
        "variable_borrow_index": "0",
        "source": "aavekit",
    }


def test_stablecoin_overview_groups_latest_rows_across_markets() -> None:
    conn = _setup_conn()
    base = MarketConfig(key="base-v3", display_name="Base", pool_address="0xBase", chain_id=8453)
    for row in (
        _asset_row("ethereum-v3", "0xusdc", "USDC", "2024-06-29", 900.0, 400.0),
        _asset_row("ethereum-v3", "0xusdc", "USDC", "2024-06-30", 1000.0, 500.0),
        _asset_row("ethereum-v3", "0xweth", "WETH", "2024-06-30", 5000.0, 1000.0),
        _asset_row("base-v3", "0xusdc", "USDC", "2024-06-30", 200.0, 100.0),
        _asset_row("base-v3", "0xgho", "GHO", "2024-06-28", 50.0, 10.0),
    ):
        store.upsert_asset_snapshot(conn, row)

    overview = market_view.stablecoin_overview(conn, [MARKET, base], StablecoinRegistry(["USDC", "GHO"]))

    assert [entry["symbol"] for entry in overview] == ["USDC", "GHO"]
    usdc = overview[0]
    assert [row["market_key"] for row in usdc["markets"]] == ["ethereum-v3", "base-v3"]
    assert usdc["markets"][0]["snapshot_date"] == "2024-06-30"
    assert usdc["markets"][1]["market_name"] == "Base"
    assert usdc["total_supplied_usd"] == pytest.approx(1200.0)
    assert usdc["total_borrowed_usd"] == pytest.approx(600.0)
    assert overview[1]["markets"][0]["utilization"] == pytest.approx(0.2)
