from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from dateutil import parser as date_parser

from reserve_yields.calc.numeric import NumericValue
from reserve_yields.models import Reserve

WINDOW_DAYS: Dict[str, int] = {
    "7d": 7,
    "30d": 30,
    "3m": 90,
    "6m": 180,
    "1y": 365,
}

CHANGE_PERIODS = (("1d", 1), ("7d", 7), ("30d", 30))


def market_totals(reserves: Iterable[Reserve]) -> dict[str, float]:
    supplied = NumericValue(0)
    borrowed = NumericValue(0)
    for reserve in reserves:
        supplied = supplied.plus(reserve.supplied_usd())
        borrowed = borrowed.plus(reserve.borrowed_usd())
    return {
        "total_supply_usd": supplied.to_float(),
        "total_borrow_usd": borrowed.to_float(),
        "available_usd": supplied.minus(borrowed).to_float(),
    }


def period_change(current: float, past: Optional[float]) -> Optional[dict[str, float]]:
    if past is None:
        return None
    delta = current - past
    percent = (delta / past) * 100 if past != 0 else 0.0
    return {"delta": delta, "percent": percent}


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.isoparse(str(value)).date()


def find_point_by_date(points: Sequence[Mapping[str, Any]], target: date | str) -> Optional[Mapping[str, Any]]:
    target_str = _as_date(target).isoformat()
    for point in points:
        if str(point["date"])[:10] == target_str:
            return point
    return None


def change_windows(
    points: Sequence[Mapping[str, Any]],
    value_keys: Sequence[str],
    as_of: date | str | None = None,
) -> dict[str, Optional[dict[str, Any]]]:
    """Changes over 1d/7d/30d against the point on the exact past date."""
    if not points:
        return {name: None for name, _ in CHANGE_PERIODS}
    ordered = sorted(points, key=lambda item: str(item["date"]))
    current = find_point_by_date(ordered, as_of) if as_of is not None else ordered[-1]
    if current is None:
        return {name: None for name, _ in CHANGE_PERIODS}
    current_date = _as_date(current["date"])
    results: dict[str, Optional[dict[str, Any]]] = {}
    for name, days in CHANGE_PERIODS:
        past = find_point_by_date(ordered, current_date - timedelta(days=days))
        if past is None:
            results[name] = None
            continue
        results[name] = {key: period_change(float(current[key]), float(past[key])) for key in value_keys}
    return results


def monthly_rollup(daily: Iterable[Mapping[str, Any]]) -> List[dict[str, Any]]:
    groups: "OrderedDict[str, List[Mapping[str, Any]]]" = OrderedDict()
    for snapshot in sorted(daily, key=lambda item: str(item["date"])):
        groups.setdefault(str(snapshot["date"])[:7], []).append(snapshot)

    months: List[dict[str, Any]] = []
    for month, rows in groups.items():
        first = rows[0]
        last = rows[-1]
        count = len(rows)
        months.append(
            {
                "month": month,
                "start_date": first["date"],
                "end_date": last["date"],
                "avg_supply_apr": sum(row["supply_apr"] for row in rows) / count,
                "avg_borrow_apr": sum(row["borrow_apr"] for row in rows) / count,
                "avg_price": sum(row.get("price_usd", 0.0) for row in rows) / count,
                "start_supplied_usd": first["supplied_usd"],
                "end_supplied_usd": last["supplied_usd"],
                "start_borrowed_usd": first["borrowed_usd"],
                "end_borrowed_usd": last["borrowed_usd"],
                "start_utilization": first["utilization"],
                "end_utilization": last["utilization"],
            }
        )
    return months


def filter_by_window(
    points: Iterable[Mapping[str, Any]],
    window: str,
    now: datetime | None = None,
) -> List[Mapping[str, Any]]:
    if window not in WINDOW_DAYS:
        raise ValueError(f"Unknown window: {window}")
    end = (now or datetime.now(timezone.utc)).date()
    start = end - timedelta(days=WINDOW_DAYS[window])
    selected = [point for point in points if _as_date(point["date"]) >= start]
    return sorted(selected, key=lambda item: str(item["date"]))
