import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Optional, Protocol, cast

import psycopg2

from .batching import VOLATILE_SUFFIX, InsertBatch, db_value, plan_batches
from .naming import field_table, quote_ident, tag_table
from .points import TimeSeriesPoint


LOGGER = logging.getLogger(__name__)

# LIKE pattern: escaped underscore so only a literal "_n" suffix matches.
VOLATILE_LIKE_PATTERN = "%\\" + VOLATILE_SUFFIX


class CursorProtocol(Protocol):
    description: Optional[Sequence[tuple[object, ...]]]

    def execute(self, sql: str, params: Optional[tuple[object, ...]] = None) -> None: ...

    def fetchall(self) -> list[tuple[object, ...]]: ...

    def fetchone(self) -> Optional[tuple[object, ...]]: ...

    def close(self) -> None: ...


class ConnectionProtocol(Protocol):
    def cursor(self) -> CursorProtocol: ...

    def commit(self) -> None: ...

    def close(self) -> None: ...


def _create_table_sql(batch: InsertBatch) -> str:
    definitions = ['"time" timestamp not null', '"time_hour" timestamp not null']
    if "series" in batch.key_columns:
        definitions.append('"series" text not null')
    if "period" in batch.key_columns:
        definitions.append("\"period\" text not null default ''")
    for column, sql_type in batch.column_types.items():
        definitions.append(f"{quote_ident(column)} {sql_type}")
    key = ", ".join(quote_ident(column) for column in batch.key_columns)
    definitions.append(f"primary key ({key})")
    return f"CREATE TABLE IF NOT EXISTS {quote_ident(batch.table)} ({', '.join(definitions)})"


def _add_column_sqls(batch: InsertBatch) -> list[str]:
    table = quote_ident(batch.table)
    statements = [f'ALTER TABLE {table} ADD COLUMN IF NOT EXISTS "time_hour" timestamp']
    for column, sql_type in batch.column_types.items():
        statements.append(
            f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {quote_ident(column)} {sql_type}"
        )
    return statements


def _insert_sql(batch: InsertBatch) -> str:
    columns = ", ".join(quote_ident(column) for column in batch.columns)
    placeholders = "(" + ", ".join(["%s"] * len(batch.columns)) + ")"
    values = ", ".join([placeholders] * len(batch.rows))
    key = ", ".join(quote_ident(column) for column in batch.key_columns)
    updates = ", ".join(
        f"{quote_ident(column)} = EXCLUDED.{quote_ident(column)}" for column in batch.value_columns
    )
    return (
        f"INSERT INTO {quote_ident(batch.table)} ({columns}) VALUES {values} "
        f"ON CONFLICT ({key}) DO UPDATE SET {updates}"
    )


class PostgresRepository:
    def __init__(
        self,
        dsn: str = "",
        connection_factory: Optional[Callable[[], ConnectionProtocol]] = None,
    ) -> None:
        self._dsn: str = dsn
        self._connection_factory: Optional[Callable[[], ConnectionProtocol]] = (
            connection_factory
        )

    def _connect(self) -> ConnectionProtocol:
        if self._connection_factory is not None:
            return self._connection_factory()
        if not self._dsn:
            raise ValueError("dsn is required when no connection_factory is provided")
        return cast(
            ConnectionProtocol,
            cast(object, psycopg2.connect(self._dsn)),
        )

    def _table_exists(self, cursor: CursorProtocol, table: str) -> bool:
        cursor.execute("SELECT to_regclass(%s)", (quote_ident(table),))
        row = cursor.fetchone()
        return row is not None and row[0] is not None

    def run_query(self, sql: str) -> tuple[list[str], list[tuple[object, ...]]]:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(sql)
            rows = cursor.fetchall()
            columns = [str(desc[0]) for desc in (cursor.description or [])]
        finally:
            cursor.close()
            conn.close()
        return columns, rows

    def write_points(
        self,
        points: Sequence[TimeSeriesPoint],
        merge_series: Optional[str] = None,
    ) -> int:
        """Upsert points chunk by chunk; every chunk is committed on its own.

        Rows of now-anchored quick ranges are deleted in the same transaction
        as the first chunk written to their table.
        """
        batches = plan_batches(points, merge_series=merge_series)
        if not batches:
            return 0

        LOGGER.info("writing %d points in %d batches", len(points), len(batches))
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        prepared: set[tuple[str, tuple[str, ...]]] = set()
        purged: set[str] = set()
        written = 0
        try:
            for batch in batches:
                if (batch.table, batch.columns) not in prepared:
                    cursor.execute(_create_table_sql(batch), ())
                    for statement in _add_column_sqls(batch):
                        cursor.execute(statement, ())
                    prepared.add((batch.table, batch.columns))

                volatile_column = batch.volatile_column
                if volatile_column is not None and batch.table not in purged:
                    cursor.execute(
                        f"DELETE FROM {quote_ident(batch.table)} "
                        f"WHERE {quote_ident(volatile_column)} LIKE %s",
                        (VOLATILE_LIKE_PATTERN,),
                    )
                    purged.add(batch.table)

                params = tuple(value for row in batch.rows for value in row)
                cursor.execute(_insert_sql(batch), params)
                conn.commit()
                written += len(batch.rows)
        finally:
            cursor.close()
            conn.close()
        return written

    def clear_period(
        self,
        series_names: Sequence[str],
        period: str,
        merge_series: Optional[str] = None,
    ) -> int:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        cleared = 0
        try:
            if merge_series:
                table = field_table(merge_series)
                if self._table_exists(cursor, table):
                    for series in series_names:
                        cursor.execute(
                            f"DELETE FROM {quote_ident(table)} WHERE series = %s AND period = %s",
                            (series, period),
                        )
                        cleared += 1
            else:
                for series in series_names:
                    table = field_table(series)
                    if not self._table_exists(cursor, table):
                        continue
                    cursor.execute(
                        f"DELETE FROM {quote_ident(table)} WHERE period = %s",
                        (period,),
                    )
                    cleared += 1
            conn.commit()
        finally:
            cursor.close()
            conn.close()
        LOGGER.debug("cleared period %s from %d series", period, cleared)
        return cleared

    def truncate_tables(self, tables: Sequence[str]) -> list[str]:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        truncated: list[str] = []
        try:
            for table in tables:
                if not self._table_exists(cursor, table):
                    LOGGER.info("table %s does not exist, nothing to truncate", table)
                    continue
                cursor.execute(f"TRUNCATE TABLE {quote_ident(table)}", ())
                truncated.append(table)
            conn.commit()
        finally:
            cursor.close()
            conn.close()
        for table in truncated:
            LOGGER.info("truncated table %s", table)
        return truncated

    def write_last_computed(self, record: Mapping[str, object]) -> None:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS gha_last_computed(
                    metric text primary key,
                    dt timestamp not null,
                    start_dt timestamp not null,
                    took bigint not null,
                    took_as_str text not null,
                    command text not null
                )
                """,
                (),
            )
            cursor.execute(
                """
                INSERT INTO gha_last_computed(metric, dt, start_dt, took, took_as_str, command)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (metric) DO UPDATE SET
                    dt = EXCLUDED.dt,
                    start_dt = EXCLUDED.start_dt,
                    took = EXCLUDED.took,
                    took_as_str = EXCLUDED.took_as_str,
                    command = EXCLUDED.command
                """,
                (
                    record["metric"],
                    db_value(record["dt"]),
                    db_value(record["start_dt"]),
                    record["took"],
                    record["took_as_str"],
                    record["command"],
                ),
            )
            conn.commit()
        finally:
            cursor.close()
            conn.close()

    def read_quick_ranges(self) -> list[str]:
        table = tag_table("quick_ranges")
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            if not self._table_exists(cursor, table):
                return []
            cursor.execute(f'SELECT "quick_ranges_data" FROM {quote_ident(table)}', ())
            rows = cursor.fetchall()
        finally:
            cursor.close()
            conn.close()
        return [str(row[0]) for row in rows if row[0] is not None]

    def is_computed(self, metric: str, dt: datetime) -> bool:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            if not self._table_exists(cursor, "gha_computed"):
                return False
            cursor.execute(
                "SELECT 1 FROM gha_computed WHERE metric = %s AND dt = %s",
                (metric, db_value(dt)),
            )
            return cursor.fetchone() is not None
        finally:
            cursor.close()
            conn.close()

    def mark_computed(self, metric: str, dt: datetime) -> None:
        conn: ConnectionProtocol = self._connect()
        cursor: CursorProtocol = conn.cursor()
        try:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS gha_computed(
                    metric text not null,
                    dt timestamp not null,
                    primary key(metric, dt)
                )
                """,
                (),
            )
            cursor.execute(
                "INSERT INTO gha_computed(metric, dt) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (metric, db_value(dt)),
            )
            conn.commit()
        finally:
            cursor.close()
            conn.close()
