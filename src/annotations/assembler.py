import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from src.tsdb.points import EPOCH_FLOOR, hour_start, to_ymd

from .models import Annotation, MilestoneDates


LOGGER = logging.getLogger(__name__)

PROJECT_START = "Project start"
FIRST_JOIN = "First CNCF project join date"


def assemble_timeline(*sources: Iterable[Annotation]) -> list[Annotation]:
    """Merge annotation sources into one ascending, hour-deduplicated timeline.

    Sorting is stable, so equal timestamps keep discovery order. When two
    annotations fall into the same hour, the first one wins.
    """
    merged = [annotation for source in sources for annotation in source]
    merged.sort(key=lambda annotation: annotation.timestamp)

    timeline: list[Annotation] = []
    previous_hour: Optional[datetime] = None
    for annotation in merged:
        current_hour = hour_start(annotation.timestamp)
        if current_hour == previous_hour:
            LOGGER.debug(
                "skipping annotation %s: same hour as the previous one (%s)",
                annotation.name,
                current_hour,
            )
            continue
        previous_hour = current_hour
        timeline.append(annotation)
    return timeline


def synthesize_start_and_join(start: datetime, join: datetime) -> list[Annotation]:
    if start < EPOCH_FLOOR or join < EPOCH_FLOOR or not join > start:
        return []
    return [
        Annotation(
            name=PROJECT_START,
            description=f"{to_ymd(start)} - project starts",
            timestamp=start,
        ),
        Annotation(name=FIRST_JOIN, description=to_ymd(join), timestamp=join),
    ]


def synthesize_milestone_annotations(dates: MilestoneDates) -> list[Annotation]:
    """Annotations for a project that has no tag history to draw from."""
    if dates.start is None:
        return []
    if dates.join is not None:
        return synthesize_start_and_join(dates.start, dates.join)
    return [
        Annotation(
            name=PROJECT_START,
            description=f"{to_ymd(dates.start)} - project starts",
            timestamp=dates.start,
        )
    ]


def milestone_markers(dates: MilestoneDates) -> list[Annotation]:
    """Extra annotation points for lifecycle milestones.

    These are written to the annotations series only and never feed quick
    ranges. Start and join are skipped when both are known and out of order.
    """
    markers: list[Annotation] = []
    start_join_ok = dates.start is None or dates.join is None or dates.join_after_start
    if start_join_ok and dates.start is not None:
        markers.append(
            Annotation(
                name="Project start date",
                description=f"{to_ymd(dates.start)} - project starts",
                timestamp=dates.start,
            )
        )
    if start_join_ok and dates.join is not None:
        markers.append(
            Annotation(
                name="CNCF join date",
                description=f"{to_ymd(dates.join)} - joined CNCF",
                timestamp=dates.join,
            )
        )
    if dates.incubating is not None:
        markers.append(
            Annotation(
                name="Moved to incubating state",
                description=f"{to_ymd(dates.incubating)} - project moved to incubating state",
                timestamp=dates.incubating,
            )
        )
    if dates.graduated is not None:
        markers.append(
            Annotation(
                name="Graduated",
                description=f"{to_ymd(dates.graduated)} - project graduated",
                timestamp=dates.graduated,
            )
        )
    if dates.archived is not None:
        markers.append(
            Annotation(
                name="Archived",
                description=f"{to_ymd(dates.archived)} - project was archived",
                timestamp=dates.archived,
            )
        )
    return markers
