from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


Scalar = Union[str, int, float, bool, datetime, None]

# Global "beginning of time": nothing older than this is ever materialized.
EPOCH_FLOOR = datetime(2012, 7, 1, tzinfo=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hour_start(value: datetime) -> datetime:
    return ensure_utc(value).replace(minute=0, second=0, microsecond=0)


def day_start(value: datetime) -> datetime:
    return ensure_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)


def next_day_start(value: datetime) -> datetime:
    return day_start(value) + timedelta(days=1)


def to_ymd(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%d")


def to_ymdhms(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S")


def parse_time_text(raw: str) -> datetime:
    try:
        return ensure_utc(datetime.fromisoformat(raw.strip()))
    except ValueError as exc:
        raise ValueError(f"invalid date: {raw!r}") from exc


@dataclass(frozen=True)
class TimeSeriesPoint:
    series_name: str
    period: str
    event_time: datetime
    ingestion_time: datetime
    tags: Optional[Mapping[str, str]] = None
    fields: Optional[Mapping[str, Scalar]] = field(default=None)

    def column_keys(self) -> tuple[tuple[str, ...], tuple[str, ...]]:
        return (
            tuple(sorted(self.tags or {})),
            tuple(sorted(self.fields or {})),
        )

    def renamed(self, series_name: str, period: Optional[str] = None) -> "TimeSeriesPoint":
        return replace(
            self,
            series_name=series_name,
            period=self.period if period is None else period,
        )


def new_point(
    series_name: str,
    period: str,
    event_time: datetime,
    tags: Optional[Mapping[str, str]] = None,
    fields: Optional[Mapping[str, Scalar]] = None,
    exact: bool = False,
    ingestion_time: Optional[datetime] = None,
) -> TimeSeriesPoint:
    """Build a point, truncating ``event_time`` to the hour unless ``exact``.

    Tags and fields are copied so later mutation by the caller cannot leak
    into a point that is already queued for writing.
    """
    point_time = ensure_utc(event_time) if exact else hour_start(event_time)
    return TimeSeriesPoint(
        series_name=series_name,
        period=period,
        event_time=point_time,
        ingestion_time=ingestion_time or datetime.now(timezone.utc),
        tags=dict(tags) if tags is not None else None,
        fields=dict(fields) if fields is not None else None,
    )
