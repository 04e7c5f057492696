from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .naming import check_identifier, field_table, tag_table
from .points import Scalar, TimeSeriesPoint, ensure_utc, hour_start


MAX_ROWS_PER_STATEMENT = 1000

QUICK_RANGES_SERIES = "quick_ranges"
VOLATILE_SUFFIX = "_n"

# Tag tables whose now-anchored rows must be purged before every rewrite.
VOLATILE_COLUMNS: dict[str, str] = {
    tag_table(QUICK_RANGES_SERIES): QUICK_RANGES_SERIES + "_suffix",
}

TAG_KEY = ("time",)
FIELD_KEY = ("time", "period")
MERGED_KEY = ("time", "series", "period")
RESERVED_COLUMNS = frozenset(MERGED_KEY + ("time_hour",))


@dataclass(frozen=True)
class InsertBatch:
    table: str
    key_columns: tuple[str, ...]
    columns: tuple[str, ...]
    column_types: dict[str, str]
    rows: list[tuple[object, ...]]

    @property
    def value_columns(self) -> tuple[str, ...]:
        return tuple(c for c in self.columns if c not in self.key_columns)

    @property
    def volatile_column(self) -> Optional[str]:
        return VOLATILE_COLUMNS.get(self.table)


@dataclass
class _Group:
    table: str
    key_columns: tuple[str, ...]
    columns: tuple[str, ...]
    is_tag: bool
    rows: dict[tuple[object, ...], tuple[object, ...]] = field(default_factory=dict)
    payloads: list[Mapping[str, object]] = field(default_factory=list)

    def column_types(self) -> dict[str, str]:
        skip = set(self.key_columns) | {"time_hour"}
        types: dict[str, str] = {}
        for column in self.columns:
            if column in skip:
                continue
            if self.is_tag:
                types[column] = "text"
            else:
                types[column] = _sql_type(payload.get(column) for payload in self.payloads)
        return types


def _sql_type(values: Iterable[object]) -> str:
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, (int, float, Decimal)):
            return "double precision"
        if isinstance(value, datetime):
            return "timestamp"
        return "text"
    return "double precision"


def db_value(value: Scalar) -> object:
    if isinstance(value, datetime):
        return ensure_utc(value).replace(tzinfo=None)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _row_for(point: TimeSeriesPoint, columns: Sequence[str], payload: Mapping[str, Scalar]) -> tuple:
    values: list[object] = []
    for column in columns:
        if column == "time":
            values.append(db_value(point.event_time))
        elif column == "time_hour":
            values.append(db_value(hour_start(point.event_time)))
        elif column == "period":
            values.append(point.period)
        elif column == "series":
            values.append(point.series_name)
        else:
            values.append(db_value(payload[column]))
    return tuple(values)


def plan_batches(
    points: Sequence[TimeSeriesPoint],
    merge_series: Optional[str] = None,
    chunk_size: int = MAX_ROWS_PER_STATEMENT,
) -> list[InsertBatch]:
    """Group points into homogeneous, chunked insert batches.

    Tag payloads go to ``t<series>`` and field payloads to ``s<series>`` (or
    to ``s<merge_series>``, keyed additionally by ``series``). Each distinct
    column set inside a table becomes its own batch. Rows sharing a natural
    key inside one batch collapse to the last one seen, which is what an
    upsert per point would have left behind.
    """
    groups: dict[tuple[str, tuple[str, ...]], _Group] = {}

    def add(
        table: str,
        key_columns: tuple[str, ...],
        is_tag: bool,
        point: TimeSeriesPoint,
        payload: Mapping[str, Scalar],
    ) -> None:
        for name in payload:
            if name in RESERVED_COLUMNS:
                raise ValueError(f"column name is reserved: {name}")
            check_identifier(name)
        columns = tuple(dict.fromkeys(key_columns + ("time_hour",) + tuple(sorted(payload))))
        group = groups.get((table, columns))
        if group is None:
            group = _Group(table=table, key_columns=key_columns, columns=columns, is_tag=is_tag)
            groups[(table, columns)] = group
        row = _row_for(point, columns, payload)
        group.rows[row[: len(key_columns)]] = row
        group.payloads.append(payload)

    for point in points:
        if point.tags is not None:
            add(tag_table(point.series_name), TAG_KEY, True, point, point.tags)
        if point.fields is not None:
            if merge_series:
                add(field_table(merge_series), MERGED_KEY, False, point, point.fields)
            else:
                add(field_table(point.series_name), FIELD_KEY, False, point, point.fields)

    batches: list[InsertBatch] = []
    for group in groups.values():
        column_types = group.column_types()
        rows = list(group.rows.values())
        for start in range(0, len(rows), chunk_size):
            batches.append(
                InsertBatch(
                    table=group.table,
                    key_columns=group.key_columns,
                    columns=group.columns,
                    column_types=column_types,
                    rows=rows[start : start + chunk_size],
                )
            )
    return batches
