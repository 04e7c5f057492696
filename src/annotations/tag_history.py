import logging
import re
from datetime import datetime, timezone
from typing import Optional

from src.tsdb.points import EPOCH_FLOOR

from .models import DESCRIPTION_MAX_CHARS, Annotation


LOGGER = logging.getLogger(__name__)

FIELD_SEPARATOR = "♂♀"
_WHITESPACE_TRANSLATION = str.maketrans({"\n": " ", "\r": " ", "\t": " "})
_TIMESTAMP_PATTERN = re.compile(r"-?[0-9]+")


class TagHistoryError(ValueError):
    pass


def compile_filter(pattern: Optional[str]) -> Optional[re.Pattern[str]]:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise TagHistoryError(f"invalid annotation regexp {pattern!r}: {exc}") from exc


def clean_subject(subject: str) -> str:
    # Truncate by characters first, then normalize whitespace.
    return subject[:DESCRIPTION_MAX_CHARS].translate(_WHITESPACE_TRANSLATION)


def split_tag_lines(raw: str, repo: str = "") -> list[tuple[str, str, str]]:
    triples: list[tuple[str, str, str]] = []
    for line in raw.split("\n"):
        data = line.strip()
        if not data:
            continue
        parts = data.split(FIELD_SEPARATOR)
        if len(parts) != 3:
            raise TagHistoryError(f"invalid tag data returned for repo {repo!r}: {data!r}")
        triples.append((parts[0], parts[1], parts[2]))
    return triples


def extract_annotations(
    raw: str,
    filter_regexp: Optional[str] = None,
    repo: str = "",
) -> list[Annotation]:
    """Parse ``git tag`` output into annotations, in discovery order.

    Lines look like ``name♂♀unix_timestamp♂♀subject``. A structurally broken
    line aborts the whole extraction; tags without a usable date, or dated
    before the epoch floor, are skipped.
    """
    pattern = compile_filter(filter_regexp)
    annotations: list[Annotation] = []

    for tag_name, raw_timestamp, subject in split_tag_lines(raw, repo):
        if pattern is not None and not pattern.search(tag_name):
            continue
        if raw_timestamp == "":
            LOGGER.debug("empty time returned for repo %s, tag %s", repo, tag_name)
            continue
        try:
            if _TIMESTAMP_PATTERN.fullmatch(raw_timestamp) is None:
                raise ValueError(raw_timestamp)
            created_at = datetime.fromtimestamp(int(raw_timestamp), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            LOGGER.warning(
                "invalid time returned for repo %s, tag %s: %r", repo, tag_name, raw_timestamp
            )
            continue

        if created_at < EPOCH_FLOOR:
            LOGGER.debug("skipping tag %s dated %s, before %s", tag_name, created_at, EPOCH_FLOOR)
            continue

        annotations.append(
            Annotation(name=tag_name, description=clean_subject(subject), timestamp=created_at)
        )

    LOGGER.debug("got %d tags for %s", len(annotations), repo)
    return annotations
