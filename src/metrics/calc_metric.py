import logging
import random
import re
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from src.tsdb.naming import map_name, normalize_name
from src.tsdb.points import EPOCH_FLOOR, Scalar, TimeSeriesPoint, new_point, to_ymdhms

from .contracts import MetricSpec
from .intervals import db_interval, describe_hours, interval_hours, range_hours


LOGGER = logging.getLogger(__name__)

VALUE_FIELD = "value"
DESCRIPTION_FIELD = "descr"

_PERIOD_COLUMN_PATTERN = re.compile(r"\{\{period:(.*?)\}\}")


class MetricShapeError(ValueError):
    pass


def random_token() -> str:
    return f"{random.getrandbits(64):x}"


def _substitute(sql: str, replacements: Mapping[str, str]) -> str:
    for placeholder, value in replacements.items():
        sql = sql.replace(placeholder, value)
    return sql


def _shared_replacements(exclude_bots: str, project_scale: float) -> dict[str, str]:
    return {
        "{{exclude_bots}}": exclude_bots,
        "{{project_scale}}": f"{project_scale:f}",
        "{{rnd}}": random_token(),
    }


def render_sql(
    template: str,
    from_time: datetime,
    to_time: datetime,
    period: str,
    exclude_bots: str = "''",
    project_scale: float = 1.0,
) -> str:
    replacements = {
        "{{from}}": to_ymdhms(from_time),
        "{{to}}": to_ymdhms(to_time),
        "{{period}}": db_interval(period),
        "{{n}}": "1.0",
        "{{range}}": range_hours(from_time, to_time),
    }
    replacements.update(_shared_replacements(exclude_bots, project_scale))
    return _substitute(template, replacements)


def prepare_quick_range_query(
    template: str,
    duration: str = "",
    from_time: Optional[datetime] = None,
    to_time: Optional[datetime] = None,
) -> tuple[str, str]:
    """Rewrite ``{{period:col}}``, ``{{from}}`` and ``{{to}}`` for one quick range.

    A range with a duration is anchored at ``now()`` in the database; any
    other range is the fixed ``[from, to)`` window. Returns the SQL and the
    range length in hours.
    """
    if duration:
        sql = _PERIOD_COLUMN_PATTERN.sub(
            lambda match: f" ({match.group(1)} >= now() - '{duration}'::interval) ", template
        )
        sql = sql.replace("{{from}}", f"(now() -'{duration}'::interval)")
        return sql.replace("{{to}}", "(now())"), interval_hours(duration)

    if from_time is None or to_time is None:
        raise ValueError("a quick range needs either a duration or both from and to")
    from_text = to_ymdhms(from_time)
    to_text = to_ymdhms(to_time)
    sql = _PERIOD_COLUMN_PATTERN.sub(
        lambda match: (
            f" ({match.group(1)} >= '{from_text}' and {match.group(1)} < '{to_text}') "
        ),
        template,
    )
    sql = sql.replace("{{from}}", f"'{from_text}'")
    return sql.replace("{{to}}", f"'{to_text}'"), range_hours(from_time, to_time)


def render_quick_range_sql(
    template: str,
    duration: str = "",
    from_time: Optional[datetime] = None,
    to_time: Optional[datetime] = None,
    exclude_bots: str = "''",
    project_scale: float = 1.0,
) -> str:
    sql, hours = prepare_quick_range_query(template, duration, from_time, to_time)
    replacements = {"{{range}}": hours}
    replacements.update(_shared_replacements(exclude_bots, project_scale))
    return _substitute(sql, replacements)


def _number(value: object) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise MetricShapeError(f"non-numeric metric value: {value!r}") from exc
    raise MetricShapeError(f"non-numeric metric value: {value!r}")


def _segment(spec: MetricSpec, raw: object) -> str:
    name = "" if raw is None else str(raw)
    if spec.escape_value_name:
        name = normalize_name(name)
    return map_name(name, spec.series_name_map)


def _value_fields(spec: MetricSpec, value: float) -> dict[str, Scalar]:
    fields: dict[str, Scalar] = {VALUE_FIELD: value}
    if spec.description_fn == "time_diff_as_string":
        fields[DESCRIPTION_FIELD] = describe_hours(value)
    return fields


def interpret_rows(
    spec: MetricSpec,
    rows: Sequence[Sequence[object]],
    event_time: datetime,
    ingestion_time: Optional[datetime] = None,
) -> list[TimeSeriesPoint]:
    """Turn one interval's result rows into metric points.

    The column count and the shape of the first column decide how a row is
    read: a lone value, a comma-separated list of names followed by one value
    per name, or a key followed by its value. Multivalue metrics collect the
    keyed values as fields of a single ``{series}_{period}`` point.
    """
    period = spec.period
    scale = spec.value_scale
    points: list[TimeSeriesPoint] = []
    multivalue_fields: dict[str, Scalar] = {}

    def add(name: str, fields: dict[str, Scalar]) -> None:
        points.append(
            new_point(name, period, event_time, fields=fields, exact=True, ingestion_time=ingestion_time)
        )

    for row in rows:
        if len(row) == 0:
            raise MetricShapeError(f"metric {spec.series_name} returned an empty row")

        if len(row) == 1:
            add(f"{spec.series_name}_{period}", _value_fields(spec, _number(row[0]) * scale))
            continue

        key = row[0]
        if isinstance(key, str) and "," in key:
            names = key.split(",")
            values = row[1:]
            if len(names) != len(values):
                raise MetricShapeError(
                    f"metric {spec.series_name}: {len(names)} names for {len(values)} values"
                )
            for index, (raw_name, raw_value) in enumerate(zip(names, values)):
                name = _segment(spec, raw_name)
                if not name:
                    LOGGER.info("series name %r maps to an empty string, skipping", raw_name)
                    continue
                value = _number(raw_value) * scale
                if spec.multivalue:
                    multivalue_fields[name] = value
                else:
                    add(f"{name}_{period}_{index}", _value_fields(spec, value))
            continue

        name = _segment(spec, key)
        if not name:
            LOGGER.info("row key %r maps to an empty string, skipping", key)
            continue
        value = _number(row[1]) * scale
        if spec.multivalue:
            multivalue_fields[name] = value
        else:
            add(f"{spec.series_name}_{name}_{period}", _value_fields(spec, value))

    if multivalue_fields:
        add(f"{spec.series_name}_{period}", multivalue_fields)
    return points


def interpret_histogram_rows(
    spec: MetricSpec,
    rows: Sequence[Sequence[object]],
    ingestion_time: Optional[datetime] = None,
    period: Optional[str] = None,
) -> list[TimeSeriesPoint]:
    """Histogram rows become ``{name, value}`` points on synthetic hours.

    Timestamps only order the buckets: the first row sits on the epoch floor
    and each following row one hour earlier. ``period`` overrides the label
    stored with the points.
    """
    label = spec.period if period is None else period
    scale = spec.value_scale
    points: list[TimeSeriesPoint] = []
    event_time = EPOCH_FLOOR
    for row in rows:
        if len(row) == 2:
            series = spec.series_name
            bucket, raw_value = row
        elif len(row) >= 3:
            series_key = _segment(spec, row[0])
            if not series_key:
                LOGGER.info("histogram series key %r maps to an empty string, skipping", row[0])
                continue
            series = f"{spec.series_name}_{series_key}"
            bucket, raw_value = row[1], row[2]
        else:
            raise MetricShapeError(
                f"histogram metric {spec.series_name} needs at least 2 columns, got {len(row)}"
            )

        fields: dict[str, Scalar] = {
            "name": "" if bucket is None else str(bucket),
            VALUE_FIELD: _number(raw_value) * scale,
        }
        if spec.description_fn == "time_diff_as_string":
            fields[DESCRIPTION_FIELD] = describe_hours(_number(raw_value) * scale)
        points.append(
            new_point(
                series,
                label,
                event_time,
                fields=fields,
                exact=True,
                ingestion_time=ingestion_time,
            )
        )
        event_time -= timedelta(hours=1)
    return points
