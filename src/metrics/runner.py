import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from uuid import uuid4

from src.annotations.models import QuickRange
from src.tsdb.points import TimeSeriesPoint, hour_start, to_ymdhms

from .calc_metric import (
    interpret_histogram_rows,
    interpret_rows,
    render_quick_range_sql,
    render_sql,
)
from .contracts import RANGE_PREFIX, MetricSpec, parse_range_period
from .intervals import iter_intervals


LOGGER = logging.getLogger(__name__)


class MetricRepositoryProtocol(Protocol):
    def run_query(self, sql: str) -> tuple[list[str], list[tuple[object, ...]]]: ...

    def write_points(
        self,
        points: Sequence[TimeSeriesPoint],
        merge_series: Optional[str] = None,
    ) -> int: ...

    def clear_period(
        self,
        series_names: Sequence[str],
        period: str,
        merge_series: Optional[str] = None,
    ) -> int: ...

    def truncate_tables(self, tables: Sequence[str]) -> list[str]: ...

    def write_last_computed(self, record: Mapping[str, object]) -> None: ...

    def read_quick_ranges(self) -> list[str]: ...

    def is_computed(self, metric: str, dt: datetime) -> bool: ...

    def mark_computed(self, metric: str, dt: datetime) -> None: ...


@dataclass(frozen=True)
class MetricResult:
    metric: str
    queries: int
    points: int
    written: int
    truncated: list[str]
    skipped: bool = False


@dataclass(frozen=True)
class HistogramQuery:
    sql: str
    period: str
    # End of a fixed quick range that is fully in the past; marked computed after the write.
    computed_dt: Optional[datetime] = None
    skipped: bool = False


def _unique_series(points: Sequence[TimeSeriesPoint]) -> list[str]:
    return list(dict.fromkeys(point.series_name for point in points))


def _took_as_str(started_at: datetime, finished_at: datetime) -> str:
    return str(finished_at - started_at)


def find_quick_range(repository: MetricRepositoryProtocol, suffix: str) -> QuickRange:
    known = [QuickRange.from_data(data) for data in repository.read_quick_ranges()]
    for quick_range in known:
        if quick_range.suffix == suffix:
            return quick_range
    raise ValueError(
        f"quick range not found: {suffix!r}, known quick ranges: {[r.suffix for r in known]}"
    )


def histogram_query(
    spec: MetricSpec,
    from_time: datetime,
    to_time: datetime,
    repository: MetricRepositoryProtocol,
    exclude_bots: str,
    now: datetime,
) -> HistogramQuery:
    """Resolve the single query a histogram runs and the period label it stores."""
    if spec.annotations_ranges:
        quick_range = find_quick_range(repository, spec.period)
        LOGGER.info("histogram %s uses quick range %s", spec.metric_key, quick_range.data())
        computed_dt: Optional[datetime] = None
        if not quick_range.duration and quick_range.to_time is not None:
            if quick_range.to_time < hour_start(now) - timedelta(hours=1):
                computed_dt = quick_range.to_time
        if (
            spec.skip_past
            and computed_dt is not None
            and repository.is_computed(spec.metric_key, computed_dt)
        ):
            LOGGER.info(
                "skipping past quick range %s of %s, already computed",
                spec.period,
                spec.metric_key,
            )
            return HistogramQuery(sql="", period=spec.period, skipped=True)
        sql = render_quick_range_sql(
            spec.sql_template,
            quick_range.duration,
            quick_range.from_time,
            quick_range.to_time,
            exclude_bots=exclude_bots,
            project_scale=spec.project_scale,
        )
        return HistogramQuery(sql=sql, period=spec.period, computed_dt=computed_dt)

    if spec.period.startswith(RANGE_PREFIX):
        range_from, range_to = parse_range_period(spec.period)
        sql = render_quick_range_sql(
            spec.sql_template,
            from_time=range_from,
            to_time=range_to,
            exclude_bots=exclude_bots,
            project_scale=spec.project_scale,
        )
        label = f"{RANGE_PREFIX}{to_ymdhms(range_from)},{to_ymdhms(range_to)}"
        return HistogramQuery(sql=sql, period=label)

    sql = render_sql(
        spec.sql_template,
        from_time,
        to_time,
        spec.period,
        exclude_bots,
        project_scale=spec.project_scale,
    )
    return HistogramQuery(sql=sql, period=spec.period)


def materialize_metric(
    spec: MetricSpec,
    from_time: datetime,
    to_time: datetime,
    repository: MetricRepositoryProtocol,
    exclude_bots: str = "''",
    enable_drop: bool = False,
    skip_tsdb: bool = False,
    now: Optional[datetime] = None,
) -> MetricResult:
    """Compute one metric over ``[from_time, to_time]`` and write its points.

    Histograms run a single query and replace every row of their period,
    even when the new result is empty. Other metrics run once per period
    interval.
    """
    ingestion_time = now or datetime.now(timezone.utc)
    points: list[TimeSeriesPoint] = []
    queries = 0
    histogram: Optional[HistogramQuery] = None

    if spec.histogram:
        histogram = histogram_query(
            spec, from_time, to_time, repository, exclude_bots, ingestion_time
        )
        if histogram.skipped:
            return MetricResult(
                metric=spec.metric_key, queries=0, points=0, written=0, truncated=[], skipped=True
            )
        _, rows = repository.run_query(histogram.sql)
        queries += 1
        points.extend(
            interpret_histogram_rows(
                spec, rows, ingestion_time=ingestion_time, period=histogram.period
            )
        )
    else:
        for interval_from, interval_to in iter_intervals(from_time, to_time, spec.period):
            sql = render_sql(
                spec.sql_template,
                interval_from,
                interval_to,
                spec.period,
                exclude_bots,
                project_scale=spec.project_scale,
            )
            _, rows = repository.run_query(sql)
            queries += 1
            points.extend(
                interpret_rows(spec, rows, interval_from, ingestion_time=ingestion_time)
            )

    LOGGER.info(
        "metric %s: %d queries, %d points", spec.metric_key, queries, len(points)
    )
    if skip_tsdb:
        LOGGER.info("skipping series write for %s", spec.metric_key)
        return MetricResult(
            metric=spec.metric_key, queries=queries, points=len(points), written=0, truncated=[]
        )

    truncated: list[str] = []
    if spec.drop_tables and enable_drop:
        truncated = repository.truncate_tables(spec.drop_tables)
    if histogram is not None:
        series_names = list(dict.fromkeys([spec.series_name, *_unique_series(points)]))
        repository.clear_period(series_names, histogram.period, merge_series=spec.merge_series)
    written = repository.write_points(points, merge_series=spec.merge_series)
    if histogram is not None and histogram.computed_dt is not None:
        repository.mark_computed(spec.metric_key, histogram.computed_dt)

    return MetricResult(
        metric=spec.metric_key,
        queries=queries,
        points=len(points),
        written=written,
        truncated=truncated,
    )


def run_metric_batch(
    specs: Sequence[MetricSpec],
    from_time: datetime,
    to_time: datetime,
    repository: MetricRepositoryProtocol,
    exclude_bots: str = "''",
    enable_drop: bool = False,
    skip_tsdb: bool = False,
    command: str = "",
    now: Optional[datetime] = None,
) -> list[dict[str, object]]:
    """Run every metric, isolating failures so one bad metric stops nothing else."""
    run_records: list[dict[str, object]] = []
    for spec in specs:
        run_id = str(uuid4())
        started_at = datetime.now(timezone.utc)

        try:
            result = materialize_metric(
                spec,
                from_time,
                to_time,
                repository,
                exclude_bots=exclude_bots,
                enable_drop=enable_drop,
                skip_tsdb=skip_tsdb,
                now=now,
            )
            if not skip_tsdb:
                computed_at = datetime.now(timezone.utc)
                repository.write_last_computed(
                    {
                        "metric": spec.metric_key,
                        "dt": computed_at,
                        "start_dt": started_at,
                        "took": int((computed_at - started_at).total_seconds() * 1000),
                        "took_as_str": _took_as_str(started_at, computed_at),
                        "command": command,
                    }
                )
            status = "skipped" if result.skipped else "success"
            error_message: Optional[str] = None
            points = result.points
            written = result.written
        except Exception as error:
            LOGGER.error("metric %s failed: %s", spec.metric_key, error)
            status = "failed"
            error_message = str(error)
            points = 0
            written = 0

        finished_at = datetime.now(timezone.utc)
        run_records.append(
            {
                "run_id": run_id,
                "metric": spec.metric_key,
                "started_at": started_at.isoformat(),
                "finished_at": finished_at.isoformat(),
                "status": status,
                "points": points,
                "written": written,
                "error_message": error_message,
            }
        )
    return run_records
