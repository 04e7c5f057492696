from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Optional

from .batching import VOLATILE_SUFFIX, plan_batches
from .naming import field_table, tag_table
from .points import TimeSeriesPoint, ensure_utc


QueryHandler = Callable[[str], tuple[list[str], list[tuple[object, ...]]]]


class InMemoryRepository:
    def __init__(self, query_handler: Optional[QueryHandler] = None) -> None:
        self.tables: dict[str, dict[tuple[object, ...], dict[str, object]]] = {}
        self.last_computed: dict[str, dict[str, object]] = {}
        self.computed: set[tuple[str, datetime]] = set()
        self.queries: list[str] = []
        self._query_handler = query_handler

    def run_query(self, sql: str) -> tuple[list[str], list[tuple[object, ...]]]:
        self.queries.append(sql)
        if self._query_handler is None:
            return [], []
        return self._query_handler(sql)

    def write_points(
        self,
        points: Sequence[TimeSeriesPoint],
        merge_series: Optional[str] = None,
    ) -> int:
        purged: set[str] = set()
        written = 0
        for batch in plan_batches(points, merge_series=merge_series):
            table = self.tables.setdefault(batch.table, {})
            volatile_column = batch.volatile_column
            if volatile_column is not None and batch.table not in purged:
                for key in [
                    key
                    for key, row in table.items()
                    if str(row.get(volatile_column, "")).endswith(VOLATILE_SUFFIX)
                ]:
                    del table[key]
                purged.add(batch.table)
            for row in batch.rows:
                values = dict(zip(batch.columns, row))
                key = tuple(values[column] for column in batch.key_columns)
                table.setdefault(key, {}).update(values)
                written += 1
        return written

    def clear_period(
        self,
        series_names: Sequence[str],
        period: str,
        merge_series: Optional[str] = None,
    ) -> int:
        cleared = 0
        if merge_series:
            table = self.tables.get(field_table(merge_series))
            if table is not None:
                wanted = set(series_names)
                for key in [
                    key
                    for key, row in table.items()
                    if row.get("series") in wanted and row.get("period") == period
                ]:
                    del table[key]
                cleared = len(series_names)
            return cleared

        for series in series_names:
            table = self.tables.get(field_table(series))
            if table is None:
                continue
            for key in [key for key, row in table.items() if row.get("period") == period]:
                del table[key]
            cleared += 1
        return cleared

    def truncate_tables(self, tables: Sequence[str]) -> list[str]:
        truncated: list[str] = []
        for name in tables:
            if name in self.tables:
                self.tables[name].clear()
                truncated.append(name)
        return truncated

    def write_last_computed(self, record: Mapping[str, object]) -> None:
        self.last_computed[str(record["metric"])] = dict(record)

    def read_quick_ranges(self) -> list[str]:
        table = self.tables.get(tag_table("quick_ranges"), {})
        return [
            str(table[key]["quick_ranges_data"])
            for key in sorted(table)
            if table[key].get("quick_ranges_data") is not None
        ]

    def is_computed(self, metric: str, dt: datetime) -> bool:
        return (metric, ensure_utc(dt)) in self.computed

    def mark_computed(self, metric: str, dt: datetime) -> None:
        self.computed.add((metric, ensure_utc(dt)))

    def rows(self, table: str) -> list[dict[str, object]]:
        stored = self.tables.get(table, {})
        return [dict(stored[key]) for key in sorted(stored)]

    def snapshot_counts(self) -> dict[str, int]:
        return {name: len(rows) for name, rows in sorted(self.tables.items())}
