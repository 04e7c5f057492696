from datetime import datetime, timedelta

from src.tsdb.points import day_start, ensure_utc, hour_start


DB_INTERVALS = {
    "h": "hour",
    "d": "day",
    "w": "week",
    "m": "month",
    "q": "quarter",
    "y": "year",
}


def db_interval(period: str) -> str:
    try:
        return "1 " + DB_INTERVALS[period]
    except KeyError as exc:
        raise ValueError(f"unsupported period: {period}") from exc


def _month_start(value: datetime) -> datetime:
    return day_start(value).replace(day=1)


def _add_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + value.month - 1 + months
    return value.replace(year=index // 12, month=index % 12 + 1)


def interval_start(value: datetime, period: str) -> datetime:
    if period == "h":
        return hour_start(value)
    if period == "d":
        return day_start(value)
    if period == "w":
        # Weeks start on Monday.
        return day_start(value) - timedelta(days=ensure_utc(value).weekday())
    if period == "m":
        return _month_start(value)
    if period == "q":
        start = _month_start(value)
        return start.replace(month=(start.month - 1) // 3 * 3 + 1)
    if period == "y":
        return _month_start(value).replace(month=1)
    raise ValueError(f"unsupported period: {period}")


def next_interval_start(value: datetime, period: str) -> datetime:
    start = interval_start(value, period)
    if period == "h":
        return start + timedelta(hours=1)
    if period == "d":
        return start + timedelta(days=1)
    if period == "w":
        return start + timedelta(days=7)
    if period == "m":
        return _add_months(start, 1)
    if period == "q":
        return _add_months(start, 3)
    return _add_months(start, 12)


def iter_intervals(
    from_time: datetime,
    to_time: datetime,
    period: str,
) -> list[tuple[datetime, datetime]]:
    """Consecutive ``[start, end)`` intervals covering ``from_time``..``to_time``.

    The first interval starts at the period start containing ``from_time``
    and the last one ends at the period start following ``to_time``.
    """
    current = interval_start(from_time, period)
    end = next_interval_start(to_time, period)
    intervals: list[tuple[datetime, datetime]] = []
    while current < end:
        following = next_interval_start(current, period)
        intervals.append((current, following))
        current = following
    return intervals


def range_hours(from_time: datetime, to_time: datetime) -> str:
    if not to_time > from_time:
        return "0"
    return f"{(ensure_utc(to_time) - ensure_utc(from_time)).total_seconds() / 3600.0:f}"


_UNIT_HOURS = {
    "h": 1.0, "hr": 1.0, "hour": 1.0, "hrs": 1.0, "hours": 1.0,
    "d": 24.0, "day": 24.0, "days": 24.0,
    "w": 168.0, "week": 168.0, "weeks": 168.0,
    "month": 730.5, "months": 730.5,
    "q": 2191.5, "quarter": 2191.5, "quarters": 2191.5,
    "y": 8766.0, "year": 8766.0, "years": 8766.0,
}


def interval_hours(duration: str) -> str:
    """Average hours in a Postgres-style interval such as ``3 months``."""
    tokens = duration.split()
    if not tokens:
        return "0"
    count = 1.0
    unit = tokens[0]
    if len(tokens) > 1:
        try:
            count = max(float(tokens[0]), 0.0)
        except ValueError as exc:
            raise ValueError(f"invalid interval count: {duration}") from exc
        unit = tokens[1]
    try:
        return f"{count * _UNIT_HOURS[unit.lower()]:f}"
    except KeyError as exc:
        raise ValueError(f"unknown interval: {duration}") from exc


def _plural(count: int, unit: str) -> str:
    if count == 1:
        return f"1 {unit}"
    return f"{count} {unit}s"


def describe_hours(hours: float) -> str:
    """Human description of an hour count, e.g. ``30`` -> ``1 day 6 hours``."""
    seconds = int(hours * 3600.0 + 0.5)
    if seconds < 0:
        return "- " + describe_hours(-hours)
    if seconds == 0:
        return "zero"

    parts: list[str] = []
    for unit, unit_seconds in (
        ("week", 604800),
        ("day", 86400),
        ("hour", 3600),
        ("minute", 60),
        ("second", 1),
    ):
        count, seconds = divmod(seconds, unit_seconds)
        if count > 0:
            parts.append(_plural(count, unit))
    return " ".join(parts)
