from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, localcontext
from typing import Any, Iterable, Mapping

from reserve_yields.calc.numeric import PRECISION, NumericValue, NumberLike
from reserve_yields.errors import InsufficientDataForInterpolation
from reserve_yields.models import RateCurve

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
DAYS_PER_YEAR = 365
MIN_PERIOD_COVERAGE = 0.8
SERIES_DAYS = 30

LENDING_RATE_PERIODS = (
    ("1d", 1),
    ("7d", 7),
    ("30d", 30),
    ("6m", 180),
    ("1y", 365),
)

SCENARIO_ACTIONS = ("Deposit", "Withdraw", "Borrow", "Repay")


def apr_from_indices(index_start: NumberLike, index_end: NumberLike, days: float) -> float:
    start = NumericValue(index_start)
    end = NumericValue(index_end)
    if start.is_zero() or not days:
        return 0.0
    with localcontext() as ctx:
        ctx.prec = PRECISION
        exponent = Decimal(1) / Decimal(repr(float(days)))
    daily_growth = end.div(start).pow(exponent)
    return daily_growth.minus(1).times(DAYS_PER_YEAR).to_float()


def average_apr(snapshots: Iterable[Mapping[str, Any]], period_days: float) -> float | None:
    ordered = sorted(snapshots, key=lambda item: item["timestamp"])
    if len(ordered) < 2:
        return None
    first = ordered[0]
    last = ordered[-1]
    span_days = (last["timestamp"] - first["timestamp"]) / SECONDS_PER_DAY
    if span_days < period_days * MIN_PERIOD_COVERAGE:
        return None
    return apr_from_indices(first["index"], last["index"], span_days)


def _indexed(rows: Iterable[Mapping[str, Any]], index_key: str) -> list[dict[str, Any]]:
    # live rows carry no index and are stored as "0"
    return [
        {"index": row[index_key], "timestamp": row["timestamp"]}
        for row in rows
        if row.get(index_key) and not NumericValue(row[index_key]).is_zero()
    ]


def average_lending_rates(
    snapshots: Iterable[Mapping[str, Any]],
    now: datetime | None = None,
) -> dict[str, dict[str, float | None]]:
    now_ts = (now or datetime.now(timezone.utc)).timestamp()
    rows = list(snapshots)
    results: dict[str, dict[str, float | None]] = {}
    for name, days in LENDING_RATE_PERIODS:
        cutoff = now_ts - days * SECONDS_PER_DAY
        window = [row for row in rows if row["timestamp"] >= cutoff]
        if len(window) < 2:
            results[name] = {"supply_apr": None, "borrow_apr": None}
            continue
        results[name] = {
            "supply_apr": average_apr(_indexed(window, "liquidity_index"), days),
            "borrow_apr": average_apr(_indexed(window, "variable_borrow_index"), days),
        }
    return results


def interpolate_daily_series(
    points: list[Mapping[str, Any]],
    value_key: str,
    end: datetime,
    days: int = SERIES_DAYS,
) -> list[dict[str, Any]]:
    """Fill `days` calendar days ending at `end`, oldest first.

    `points` carry `date` (ISO), `timestamp` (unix seconds) and `value_key`.
    Requires points on two distinct dates; fewer raises InsufficientDataForInterpolation.
    """
    by_date = {point["date"]: point[value_key] for point in points}
    if len(by_date) < 2:
        raise InsufficientDataForInterpolation(
            f"Need points on at least 2 dates to interpolate, got {len(by_date)}",
            {"points": len(points), "dates": len(by_date)},
        )
    ordered = sorted(points, key=lambda item: item["timestamp"])
    series: list[dict[str, Any]] = []
    for offset in range(days - 1, -1, -1):
        day = end - timedelta(days=offset)
        day_str = day.date().isoformat()
        if day_str in by_date:
            series.append({"date": day_str, value_key: by_date[day_str]})
            continue
        day_ts = day.timestamp()
        before = None
        after = None
        for point in ordered:
            if point["timestamp"] < day_ts:
                before = point
            elif point["timestamp"] > day_ts and after is None:
                after = point
        if before is not None and after is not None:
            weight = (day_ts - before["timestamp"]) / (after["timestamp"] - before["timestamp"])
            value = before[value_key] + (after[value_key] - before[value_key]) * weight
        elif before is not None:
            value = before[value_key]
        elif after is not None:
            value = after[value_key]
        else:
            value = 0.0
        series.append({"date": day_str, value_key: value})
    return series


def thirty_day_apr_series(
    snapshots: Iterable[Mapping[str, Any]],
    now: datetime | None = None,
    value_key: str = "borrow_apr",
) -> list[dict[str, Any]]:
    end = now or datetime.now(timezone.utc)
    cutoff = end.timestamp() - SERIES_DAYS * SECONDS_PER_DAY
    recent = [item for item in snapshots if item["timestamp"] >= cutoff]
    # zero marks a first snapshot with no baseline
    valid = [item for item in recent if (item.get(value_key) or 0.0) > 0]
    try:
        return interpolate_daily_series(valid, value_key, end, SERIES_DAYS)
    except InsufficientDataForInterpolation as exc:
        logger.debug("Skipping 30d series: %s", exc)
        return []


def thirty_day_apr_stats(
    series: list[Mapping[str, Any]],
    value_key: str = "borrow_apr",
) -> dict[str, Any] | None:
    if not series or len(series) < 2:
        return None
    values = [item[value_key] for item in series]
    return {
        "last": values[-1],
        "min": min(values),
        "max": max(values),
        "delta_30d": values[-1] - values[0],
        "first_date": series[0]["date"],
        "last_date": series[-1]["date"],
    }


def utilization_rate(borrowed: NumberLike, available: NumberLike) -> float:
    borrowed_value = NumericValue(borrowed)
    total = borrowed_value.plus(available)
    if total.is_zero():
        return 0.0
    return borrowed_value.div(total).to_float()


def curve_rates(utilization: float, curve: RateCurve, reserve_factor: float) -> tuple[float, float]:
    optimal = curve.optimal_utilization
    if optimal > 0 and utilization <= optimal:
        borrow_apr = curve.base_rate + (utilization / optimal) * curve.slope1
    else:
        excess = (utilization - optimal) / (1 - optimal)
        borrow_apr = curve.base_rate + curve.slope1 + excess * curve.slope2
    supply_apr = borrow_apr * utilization * (1 - reserve_factor)
    return supply_apr, borrow_apr


def liquidity_impact(
    current_state: Mapping[str, Any],
    scenario: Mapping[str, Any],
    curve: RateCurve,
    reserve_factor: float | None = None,
) -> dict[str, float]:
    action = scenario["action"]
    if action not in SCENARIO_ACTIONS:
        raise ValueError(f"Unknown scenario action: {action}")
    if reserve_factor is None:
        reserve_factor = curve.reserve_factor if curve.reserve_factor is not None else 0.1
    amount = NumericValue(scenario["amount_usd"])
    borrowed = NumericValue(current_state["borrowed_usd"])
    available = NumericValue(current_state["available_usd"])

    if action == "Deposit":
        available = available.plus(amount)
    elif action == "Withdraw":
        available = available.minus(amount)
    elif action == "Borrow":
        borrowed = borrowed.plus(amount)
        available = available.minus(amount)
    else:
        borrowed = borrowed.minus(amount)
        available = available.plus(amount)

    if borrowed < 0:
        borrowed = NumericValue(0)
    if available < 0:
        available = NumericValue(0)
    new_utilization = min(max(utilization_rate(borrowed, available), 0.0), 1.0)
    supply_apr, borrow_apr = curve_rates(new_utilization, curve, reserve_factor)
    current_utilization = utilization_rate(current_state["borrowed_usd"], current_state["available_usd"])
    return {
        "new_utilization": new_utilization,
        "new_supply_apr": supply_apr,
        "new_borrow_apr": borrow_apr,
        "delta_utilization": new_utilization - current_utilization,
        "delta_supply_apr": supply_apr - float(current_state.get("supply_apr", 0.0)),
        "delta_borrow_apr": borrow_apr - float(current_state.get("borrow_apr", 0.0)),
    }
