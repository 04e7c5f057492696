import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Optional

from src.tsdb.batching import QUICK_RANGES_SERIES
from src.tsdb.points import EPOCH_FLOOR, TimeSeriesPoint, new_point, next_day_start

from .models import Annotation, MilestoneDates, QuickRange


LOGGER = logging.getLogger(__name__)

FIXED_RANGES: tuple[tuple[str, str, str], ...] = (
    ("d", "Last day", "1 day"),
    ("w", "Last week", "1 week"),
    ("d10", "Last 10 days", "10 days"),
    ("m", "Last month", "1 month"),
    ("q", "Last quarter", "3 months"),
    ("m6", "Last 6 months", "6 months"),
    ("y", "Last year", "1 year"),
    ("y2", "Last 2 years", "2 years"),
    ("y3", "Last 3 years", "3 years"),
    ("y5", "Last 5 years", "5 years"),
    ("y10", "Last decade", "10 years"),
    ("y100", "Last century", "100 years"),
)


def fixed_ranges() -> list[QuickRange]:
    return [
        QuickRange(suffix=suffix, display_name=name, duration=duration)
        for suffix, name, duration in FIXED_RANGES
    ]


def _bounded(
    suffix: str,
    display_name: str,
    from_time: datetime,
    to_time: datetime,
) -> Optional[QuickRange]:
    if not from_time < to_time:
        LOGGER.debug("skipping quick range %s: %s is not before %s", suffix, from_time, to_time)
        return None
    return QuickRange(
        suffix=suffix,
        display_name=display_name,
        from_time=from_time,
        to_time=to_time,
    )


def annotation_ranges(timeline: Sequence[Annotation], tomorrow: datetime) -> list[QuickRange]:
    ranges: list[Optional[QuickRange]] = []
    last_index = len(timeline) - 1
    for index, annotation in enumerate(timeline):
        if index == last_index:
            ranges.append(
                _bounded(
                    f"a_{index}_n",
                    f"{annotation.name} - now",
                    annotation.timestamp,
                    tomorrow,
                )
            )
            break
        following = timeline[index + 1]
        ranges.append(
            _bounded(
                f"a_{index}_{index + 1}",
                f"{annotation.name} - {following.name}",
                annotation.timestamp,
                following.timestamp,
            )
        )
    return [quick_range for quick_range in ranges if quick_range is not None]


def milestone_ranges(dates: MilestoneDates, tomorrow: datetime) -> list[QuickRange]:
    """Project phase ranges derived from lifecycle dates.

    Nothing is emitted unless both start and join are known and join comes
    after start. Incubation and graduation ranges additionally need the two
    dates in order when both are present.
    """
    start, join = dates.start, dates.join
    if start is None or join is None or not join > start:
        return []

    incubating, graduated = dates.incubating, dates.graduated
    ranges: list[Optional[QuickRange]] = [
        _bounded("c_b", "Before joining CNCF", start, join),
        _bounded("c_n", "Since joining CNCF", join, tomorrow),
    ]

    correct_order = incubating is None or graduated is None or graduated > incubating

    if correct_order and incubating is not None and incubating > join:
        ranges.append(_bounded("c_j_i", "CNCF join date - moved to incubation", join, incubating))
        if graduated is not None:
            ranges.append(
                _bounded("c_i_g", "Moved to incubation - graduated", incubating, graduated)
            )
        else:
            ranges.append(
                _bounded("c_i_n", "Since moving to incubating state", incubating, tomorrow)
            )

    if correct_order and graduated is not None and graduated > join:
        if incubating is None:
            ranges.append(_bounded("c_j_g", "CNCF join date - graduated", join, graduated))
        ranges.append(_bounded("c_g_n", "Since graduating", graduated, tomorrow))

    return [quick_range for quick_range in ranges if quick_range is not None]


def generate_quick_ranges(
    timeline: Sequence[Annotation],
    dates: MilestoneDates,
    now: datetime,
) -> list[QuickRange]:
    """All quick ranges for one run, in emission order.

    ``now`` is read once; every range ending "now" ends at the next UTC
    midnight after it, so the volatile ranges of a run agree with each other.
    """
    tomorrow = next_day_start(now)
    return fixed_ranges() + annotation_ranges(timeline, tomorrow) + milestone_ranges(dates, tomorrow)


def quick_range_points(
    ranges: Sequence[QuickRange],
    ingestion_time: Optional[datetime] = None,
) -> list[TimeSeriesPoint]:
    points: list[TimeSeriesPoint] = []
    event_time = EPOCH_FLOOR
    for quick_range in ranges:
        tags = {
            f"{QUICK_RANGES_SERIES}_suffix": quick_range.suffix,
            f"{QUICK_RANGES_SERIES}_name": quick_range.display_name,
            f"{QUICK_RANGES_SERIES}_data": quick_range.data(),
        }
        points.append(
            new_point(
                QUICK_RANGES_SERIES,
                "",
                event_time,
                tags=tags,
                ingestion_time=ingestion_time,
            )
        )
        event_time += timedelta(hours=1)
    return points
