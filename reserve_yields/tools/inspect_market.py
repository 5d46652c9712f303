from __future__ import annotations

import argparse
from pathlib import Path

from reserve_yields.analytics import market_view
from reserve_yields.calc.pricing import StablecoinRegistry
from reserve_yields.config import load_config
from reserve_yields.db import store


def main() -> None:
    root = Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yaml")
    parser = argparse.ArgumentParser(description="Print stored metrics for one market")
    parser.add_argument("market", nargs="?", default=config.markets[0].key if config.markets else None)
    parser.add_argument("--stablecoins", action="store_true", help="Also print stablecoins across markets")
    args = parser.parse_args()
    if not args.market:
        print("No market configured.")
        return
    try:
        market = config.market(args.market)
    except KeyError:
        print(f"Unknown market: {args.market}")
        return

    conn = store.get_connection(root / config.run.db_path)
    store.init_db(conn)
    points = store.list_market_timeseries(conn, args.market)
    reliability = store.get_market_reliability(conn, args.market)
    apr = market_view.apr_30d_for_market(conn, args.market)
    stablecoins = []
    if args.stablecoins:
        registry = StablecoinRegistry(config.pricing.stablecoins, config.pricing.stablecoin_addresses)
        stablecoins = market_view.stablecoin_overview(conn, config.markets, registry)
    conn.close()

    print(f"market: {market.key} ({market.display_name or market.key}) chain={market.chain_id}")
    if points:
        latest = points[-1]
        print(
            f"latest_point: {latest['snapshot_date']} supplied={_fmt(latest['supplied_usd'], 2)} "
            f"borrowed={_fmt(latest['borrowed_usd'], 2)} available={_fmt(latest['available_usd'], 2)} "
            f"source={latest['source']}"
        )
    else:
        print("latest_point: none")
    if reliability is None:
        print("reliability: unchecked")
    else:
        status = "reliable" if reliability["reliable"] else "unreliable"
        print(f"reliability: {status} checked_at={reliability['checked_at']} reasons={reliability['reasons']}")

    meta = apr["meta"]
    print(f"apr_30d_assets: {meta['assets']} with_series={meta['with_series']}")
    for asset, entry in apr["assets"].items():
        stats = entry.get("borrow_stats")
        if not stats:
            print(f"- {entry['symbol']} ({asset}) borrow_apr: n/a")
            continue
        print(
            f"- {entry['symbol']} borrow_apr last={_fmt(stats['last'], 4)} min={_fmt(stats['min'], 4)} "
            f"max={_fmt(stats['max'], 4)} delta_30d={_fmt(stats['delta_30d'], 4)}"
        )

    for entry in stablecoins:
        print(
            f"stablecoin {entry['symbol']}: markets={len(entry['markets'])} "
            f"supplied={_fmt(entry['total_supplied_usd'], 2)} borrowed={_fmt(entry['total_borrowed_usd'], 2)}"
        )


def _fmt(value: float | None, digits: int) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{digits}f}"


if __name__ == "__main__":
    main()
