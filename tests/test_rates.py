from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reserve_yields.calc.numeric import NumericValue
from reserve_yields.calc.rates import (
    apr_from_indices,
    average_apr,
    average_lending_rates,
    interpolate_daily_series,
    liquidity_impact,
    thirty_day_apr_series,
    thirty_day_apr_stats,
    utilization_rate,
)
from reserve_yields.errors import InsufficientDataForInterpolation
from reserve_yields.models import RateCurve

RAY = "1000000000000000000000000000"
NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)
DAY = 86400


def _point(day: datetime, value: float, key: str = "borrow_apr") -> dict:
    return {"date": day.date().isoformat(), "timestamp": int(day.timestamp()), key: value}


def test_apr_from_indices_matches_compound_formula() -> None:
    apr = apr_from_indices(RAY, "1010000000000000000000000000", 10)
    assert apr == pytest.approx((1.01 ** (1 / 10) - 1) * 365, abs=1e-6)


def test_apr_from_indices_zero_start_or_days() -> None:
    assert apr_from_indices(0, RAY, 10) == 0.0
    assert apr_from_indices(RAY, RAY, 0) == 0.0


def test_apr_from_indices_flat_index_is_zero() -> None:
    for days in (1, 7, 30.5, 365):
        assert apr_from_indices(RAY, RAY, days) == 0.0


def test_apr_from_indices_increases_with_index_ratio() -> None:
    ends = [
        "990000000000000000000000000",
        RAY,
        "1000000000000000000000000001",
        "1005000000000000000000000000",
        "1010000000000000000000000000",
        "1500000000000000000000000000",
    ]
    aprs = [apr_from_indices(RAY, end, 30) for end in ends]
    assert all(earlier < later for earlier, later in zip(aprs, aprs[1:]))
    assert aprs[0] < 0 < aprs[2]


def test_numeric_value_keeps_ray_precision() -> None:
    index = NumericValue.from_onchain("1234567890123456789012345678", 27)
    assert str(index) == "1.234567890123456789012345678"
    assert index.to_onchain(27) == "1234567890123456789012345678"
    with pytest.raises(ZeroDivisionError):
        index.div(0)


def test_average_apr_requires_period_coverage() -> None:
    start = 1_700_000_000
    short = [
        {"index": RAY, "timestamp": start},
        {"index": "1001000000000000000000000000", "timestamp": start + 7 * DAY},
    ]
    assert average_apr(short, 30) is None

    covered = [
        {"index": "1001000000000000000000000000", "timestamp": start + 25 * DAY},
        {"index": RAY, "timestamp": start},
    ]
    expected = apr_from_indices(RAY, "1001000000000000000000000000", 25)
    assert average_apr(covered, 30) == pytest.approx(expected)
    assert average_apr(covered[:1], 30) is None


def test_average_lending_rates_periods() -> None:
    rows = [
        {
            "timestamp": int((NOW - timedelta(days=offset)).timestamp()),
            "liquidity_index": str(1_000_000 + (40 - offset) * 100),
            "variable_borrow_index": str(2_000_000 + (40 - offset) * 300),
        }
        for offset in range(0, 40)
    ]
    rates = average_lending_rates(rows, now=NOW)
    assert set(rates) == {"1d", "7d", "30d", "6m", "1y"}
    assert rates["7d"]["supply_apr"] is not None
    assert rates["30d"]["borrow_apr"] > rates["30d"]["supply_apr"]
    assert rates["6m"]["supply_apr"] is None
    assert rates["1y"]["borrow_apr"] is None


def test_average_lending_rates_ignore_rows_without_index() -> None:
    rows = [
        {
            "timestamp": int((NOW - timedelta(days=offset)).timestamp()),
            "liquidity_index": str(10**27 + (31 - offset) * 10**23),
            "variable_borrow_index": str(10**27 + (31 - offset) * 3 * 10**23),
        }
        for offset in range(1, 31)
    ]
    rows.append({"timestamp": int(NOW.timestamp()), "liquidity_index": "0", "variable_borrow_index": "0"})

    rates = average_lending_rates(rows, now=NOW)

    expected = apr_from_indices(rows[-2]["liquidity_index"], rows[0]["liquidity_index"], 29)
    assert rates["30d"]["supply_apr"] == pytest.approx(expected)
    assert rates["30d"]["supply_apr"] > 0
    assert rates["30d"]["borrow_apr"] > rates["30d"]["supply_apr"]
    assert rates["1d"] == {"supply_apr": None, "borrow_apr": None}


def test_thirty_day_series_interpolates_and_clamps() -> None:
    points = [
        _point(NOW - timedelta(days=20), 0.02),
        _point(NOW - timedelta(days=10), 0.04),
        _point(NOW - timedelta(days=5), 0.0),
        _point(NOW - timedelta(days=45), 0.09),
    ]
    series = thirty_day_apr_series(points, now=NOW)

    assert len(series) == 30
    assert series[0]["date"] == "2024-06-01"
    assert series[-1]["date"] == "2024-06-30"
    by_date = {item["date"]: item["borrow_apr"] for item in series}
    assert by_date["2024-06-01"] == pytest.approx(0.02)
    assert by_date["2024-06-10"] == pytest.approx(0.02)
    assert by_date["2024-06-15"] == pytest.approx(0.03)
    assert by_date["2024-06-20"] == pytest.approx(0.04)
    assert by_date["2024-06-25"] == pytest.approx(0.04)


def test_thirty_day_series_needs_two_valid_points() -> None:
    points = [_point(NOW - timedelta(days=3), 0.05), _point(NOW - timedelta(days=2), 0.0)]
    assert thirty_day_apr_series(points, now=NOW) == []
    with pytest.raises(InsufficientDataForInterpolation):
        interpolate_daily_series(points[:1], "borrow_apr", NOW)


def test_thirty_day_series_between_window_edges_is_linear() -> None:
    start = _point(NOW - timedelta(days=29), 0.01)
    end = _point(NOW, 0.04)
    series = thirty_day_apr_series([end, start], now=NOW)

    assert len(series) == 30
    assert series[0] == {"date": "2024-06-01", "borrow_apr": 0.01}
    assert series[-1] == {"date": "2024-06-30", "borrow_apr": 0.04}
    for offset, item in enumerate(series):
        assert item["borrow_apr"] == pytest.approx(0.01 + 0.03 * offset / 29)


def test_thirty_day_series_needs_two_distinct_dates() -> None:
    morning = NOW - timedelta(days=3, hours=6)
    points = [_point(morning, 0.05), _point(morning + timedelta(hours=4), 0.06)]
    assert thirty_day_apr_series(points, now=NOW) == []
    with pytest.raises(InsufficientDataForInterpolation):
        interpolate_daily_series(points, "borrow_apr", NOW)


def test_thirty_day_stats() -> None:
    assert thirty_day_apr_stats([]) is None
    series = [
        {"date": "2024-06-01", "borrow_apr": 0.05},
        {"date": "2024-06-02", "borrow_apr": 0.02},
        {"date": "2024-06-03", "borrow_apr": 0.04},
    ]
    stats = thirty_day_apr_stats(series)
    assert stats["last"] == 0.04
    assert stats["min"] == 0.02
    assert stats["max"] == 0.05
    assert stats["delta_30d"] == pytest.approx(-0.01)
    assert stats["first_date"] == "2024-06-01"
    assert stats["last_date"] == "2024-06-03"


def test_utilization_rate() -> None:
    assert utilization_rate(0, 0) == 0.0
    assert utilization_rate("50", "150") == pytest.approx(0.25)


CURVE = RateCurve(optimal_utilization=0.8, base_rate=0.0, slope1=0.04, slope2=0.6, reserve_factor=0.1)


def test_liquidity_impact_deposit_below_optimal() -> None:
    current = {"borrowed_usd": 50, "available_usd": 50, "supply_apr": 0.02, "borrow_apr": 0.025}
    impact = liquidity_impact(current, {"action": "Deposit", "amount_usd": 50}, CURVE)
    utilization = 50 / 150
    borrow = 0.04 * utilization / 0.8
    assert impact["new_utilization"] == pytest.approx(utilization)
    assert impact["new_borrow_apr"] == pytest.approx(borrow)
    assert impact["new_supply_apr"] == pytest.approx(borrow * utilization * 0.9)
    assert impact["delta_utilization"] == pytest.approx(utilization - 0.5)
    assert impact["delta_borrow_apr"] == pytest.approx(borrow - 0.025)


def test_liquidity_impact_borrow_above_optimal() -> None:
    current = {"borrowed_usd": 50, "available_usd": 50}
    impact = liquidity_impact(current, {"action": "Borrow", "amount_usd": 40}, CURVE)
    assert impact["new_utilization"] == pytest.approx(0.9)
    assert impact["new_borrow_apr"] == pytest.approx(0.04 + 0.5 * 0.6)


def test_liquidity_impact_clamps_and_rejects_unknown_action() -> None:
    current = {"borrowed_usd": 50, "available_usd": 50}
    drained = liquidity_impact(current, {"action": "Withdraw", "amount_usd": 100}, CURVE)
    assert drained["new_utilization"] == 1.0
    assert drained["new_borrow_apr"] == pytest.approx(0.64)

    repaid = liquidity_impact(current, {"action": "Repay", "amount_usd": 80}, CURVE, reserve_factor=0.2)
    assert repaid["new_utilization"] == 0.0
    assert repaid["new_supply_apr"] == 0.0

    with pytest.raises(ValueError):
        liquidity_impact(current, {"action": "Flash", "amount_usd": 1}, CURVE)


def test_deposit_lowers_and_borrow_raises_utilization() -> None:
    current = {"borrowed_usd": 400, "available_usd": 600}
    for amount in (1, 100, 10_000):
        deposit = liquidity_impact(current, {"action": "Deposit", "amount_usd": amount}, CURVE)
        borrow = liquidity_impact(current, {"action": "Borrow", "amount_usd": amount}, CURVE)
        assert deposit["new_utilization"] < 0.4
        assert deposit["delta_utilization"] < 0
        assert borrow["new_utilization"] > 0.4
        assert borrow["delta_utilization"] > 0
