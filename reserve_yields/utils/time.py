from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from dateutil import parser


def local_today(tz_name: str = "UTC") -> date:
    return datetime.now(ZoneInfo(tz_name)).date()


def parse_date(value: str | date | None) -> date | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return parser.isoparse(value).date()
    except (ValueError, TypeError):
        return None


def end_of_day_timestamp(day: date) -> int:
    return int(datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc).timestamp())


def trailing_dates(end: date, days: int) -> list[date]:
    return [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
