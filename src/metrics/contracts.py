import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from src.tsdb.points import parse_time_text


PERIODS = ("h", "d", "w", "m", "q", "y")
DESCRIPTION_FUNCTIONS = ("time_diff_as_string",)
RANGE_PREFIX = "range:"

_NAME_MAP_PATTERN = re.compile(r"^map\[(.*)\]$")


@dataclass(frozen=True)
class MetricSpec:
    series_name: str
    sql_template: str
    period: str
    name: str = ""
    histogram: bool = False
    multivalue: bool = False
    escape_value_name: bool = False
    scale: float = 1.0
    scale_histogram: bool = False
    merge_series: Optional[str] = None
    drop_tables: tuple[str, ...] = ()
    description_fn: Optional[str] = None
    series_name_map: Mapping[str, str] = field(default_factory=dict)
    annotations_ranges: bool = False
    skip_past: bool = False
    project_scale: float = 1.0

    def __post_init__(self) -> None:
        if not self.series_name.strip():
            raise ValueError("series_name is required")
        if self.period not in PERIODS:
            self._check_histogram_period()
        if self.annotations_ranges and not self.histogram:
            raise ValueError("annotations_ranges can only be used with histogram metrics")
        if self.skip_past and not self.annotations_ranges:
            raise ValueError("skip_past needs annotations_ranges")
        if self.histogram and self.drop_tables:
            raise ValueError("drop tables cannot be used with histogram metrics")
        if self.description_fn is not None and self.description_fn not in DESCRIPTION_FUNCTIONS:
            raise ValueError(f"unknown value description function: {self.description_fn}")

    def _check_histogram_period(self) -> None:
        # Histograms may also run over a quick range suffix or an explicit range.
        if not self.histogram or not self.period.strip():
            raise ValueError(f"unsupported period: {self.period}")
        if self.period.startswith(RANGE_PREFIX):
            if self.annotations_ranges:
                raise ValueError("range periods cannot be used with annotations_ranges")
            parse_range_period(self.period)
        elif not self.annotations_ranges:
            raise ValueError(f"unsupported period: {self.period}")

    @property
    def metric_key(self) -> str:
        return f"{self.name or self.series_name} {self.period}"

    @property
    def value_scale(self) -> float:
        if self.histogram and not self.scale_histogram:
            return 1.0
        return self.scale


def parse_range_period(period: str) -> tuple[datetime, datetime]:
    """Split ``range:FROM,TO`` into its two UTC instants."""
    bounds = period[len(RANGE_PREFIX):].split(",")
    if len(bounds) != 2:
        raise ValueError("range should be specified as 'range:YYYY-MM-DD,YYYY-MM-DD'")
    return parse_time_text(bounds[0]), parse_time_text(bounds[1])


def parse_series_name_map(raw: str) -> dict[str, str]:
    """Parse ``map[old:new other:new2]`` into an ordered mapping."""
    match = _NAME_MAP_PATTERN.match(raw.strip())
    if match is None:
        raise ValueError(f"invalid series_name_map: {raw}")
    mapping: dict[str, str] = {}
    for pair in match.group(1).split():
        old, separator, new = pair.partition(":")
        if not separator or not old:
            raise ValueError(f"invalid series_name_map entry: {pair}")
        mapping[old] = new
    return mapping


def _parse_scale(raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"invalid scale: {raw}") from exc


def parse_metric_options(
    series_name: str,
    sql_template: str,
    period: str,
    options: str = "",
    name: str = "",
) -> MetricSpec:
    flags: dict[str, object] = {}
    for raw_option in options.split(","):
        option = raw_option.strip()
        if not option:
            continue
        key, _, value = option.partition(":")
        if key == "hist":
            flags["histogram"] = True
        elif key in {"multivalue", "escape_value_name", "scale_histogram", "annotations_ranges", "skip_past"}:
            flags[key] = True
        elif key == "merge_series":
            if not value:
                raise ValueError("merge_series needs a series name")
            flags["merge_series"] = value
        elif key == "drop":
            flags["drop_tables"] = tuple(table for table in value.split(";") if table)
        elif key == "scale":
            flags["scale"] = _parse_scale(value)
        elif key == "project_scale":
            flags["project_scale"] = _parse_scale(value)
        elif key == "desc":
            flags["description_fn"] = value
        elif key == "series_name_map":
            flags["series_name_map"] = parse_series_name_map(value)
        else:
            raise ValueError(f"unknown metric option: {option}")

    return MetricSpec(
        series_name=series_name,
        sql_template=sql_template,
        period=period,
        name=name,
        **flags,  # type: ignore[arg-type]
    )
