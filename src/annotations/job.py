import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from src.tsdb.points import TimeSeriesPoint, new_point

from .assembler import (
    assemble_timeline,
    milestone_markers,
    synthesize_milestone_annotations,
)
from .models import Annotation, MilestoneDates
from .quick_ranges import generate_quick_ranges, quick_range_points
from .tag_history import extract_annotations


LOGGER = logging.getLogger(__name__)

ANNOTATIONS_SERIES = "annotations"
SHARED_ANNOTATIONS_SERIES = "annotations_shared"


class PointWriterProtocol(Protocol):
    def write_points(
        self,
        points: Sequence[TimeSeriesPoint],
        merge_series: Optional[str] = None,
    ) -> int: ...


@dataclass(frozen=True)
class AnnotationJobResult:
    project: str
    annotations: int
    quick_ranges: int
    points: int
    written: int
    shared_written: int
    skipped_write: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "project": self.project,
            "annotations": self.annotations,
            "quick_ranges": self.quick_ranges,
            "points": self.points,
            "written": self.written,
            "shared_written": self.shared_written,
            "skipped_write": self.skipped_write,
        }


def annotation_points(
    annotations: Sequence[Annotation],
    ingestion_time: Optional[datetime] = None,
) -> list[TimeSeriesPoint]:
    return [
        new_point(
            ANNOTATIONS_SERIES,
            "",
            annotation.timestamp,
            fields={"title": annotation.name, "description": annotation.description},
            ingestion_time=ingestion_time,
        )
        for annotation in annotations
    ]


def shared_annotation_points(
    points: Sequence[TimeSeriesPoint],
    project: str,
    main_repo: str,
) -> list[TimeSeriesPoint]:
    shared: list[TimeSeriesPoint] = []
    for point in points:
        if point.series_name != ANNOTATIONS_SERIES:
            continue
        fields = dict(point.fields or {})
        fields["repo"] = main_repo
        shared.append(
            new_point(
                SHARED_ANNOTATIONS_SERIES,
                project,
                point.event_time,
                tags=point.tags,
                fields=fields,
                exact=True,
                ingestion_time=point.ingestion_time,
            )
        )
    return shared


def build_annotation_points(
    timeline: Sequence[Annotation],
    dates: MilestoneDates,
    now: datetime,
) -> tuple[list[TimeSeriesPoint], int]:
    ranges = generate_quick_ranges(timeline, dates, now)
    points = annotation_points(timeline, ingestion_time=now)
    points.extend(annotation_points(milestone_markers(dates), ingestion_time=now))
    points.extend(quick_range_points(ranges, ingestion_time=now))
    return points, len(ranges)


def run_annotations(
    project: str,
    dates: MilestoneDates,
    repository: PointWriterProtocol,
    main_repo: str = "",
    annotation_regexp: Optional[str] = None,
    tag_source: Optional[Callable[[str], str]] = None,
    shared_repository: Optional[PointWriterProtocol] = None,
    skip_tsdb: bool = False,
    now: Optional[datetime] = None,
) -> AnnotationJobResult:
    """Build and write annotations and quick ranges for one project.

    With a main repository the timeline comes from its tags. Without one,
    a known start date yields synthetic start/join annotations and the
    start/join-derived ranges are left out. A project with neither writes
    nothing.
    """
    run_time = now or datetime.now(timezone.utc)

    if main_repo:
        if tag_source is None:
            raise ValueError("tag_source is required when main_repo is set")
        raw = tag_source(main_repo)
        timeline = assemble_timeline(
            extract_annotations(raw, filter_regexp=annotation_regexp, repo=main_repo)
        )
        effective_dates = dates
    elif dates.start is not None:
        timeline = assemble_timeline(synthesize_milestone_annotations(dates))
        effective_dates = dates.without_start_and_join()
    else:
        LOGGER.info("project %s has neither a main repo nor a start date", project)
        return AnnotationJobResult(
            project=project,
            annotations=0,
            quick_ranges=0,
            points=0,
            written=0,
            shared_written=0,
            skipped_write=skip_tsdb,
        )

    points, range_count = build_annotation_points(timeline, effective_dates, run_time)
    LOGGER.info(
        "project %s: %d annotations, %d quick ranges, %d points",
        project,
        len(timeline),
        range_count,
        len(points),
    )

    written = 0
    shared_written = 0
    if skip_tsdb:
        LOGGER.info("skipping annotations series write")
    else:
        written = repository.write_points(points)
        if shared_repository is not None:
            shared_written = shared_repository.write_points(
                shared_annotation_points(points, project, main_repo)
            )

    return AnnotationJobResult(
        project=project,
        annotations=len(timeline),
        quick_ranges=range_count,
        points=len(points),
        written=written,
        shared_written=shared_written,
        skipped_write=skip_tsdb,
    )
