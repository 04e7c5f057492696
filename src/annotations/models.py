from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from src.tsdb.points import ensure_utc, parse_time_text, to_ymdhms


DESCRIPTION_MAX_CHARS = 40


@dataclass(frozen=True)
class Annotation:
    name: str
    description: str
    timestamp: datetime


@dataclass(frozen=True)
class MilestoneDates:
    start: Optional[datetime] = None
    join: Optional[datetime] = None
    incubating: Optional[datetime] = None
    graduated: Optional[datetime] = None
    archived: Optional[datetime] = None

    def __post_init__(self) -> None:
        for name in ("start", "join", "incubating", "graduated", "archived"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, ensure_utc(value))

    @property
    def join_after_start(self) -> bool:
        return self.start is not None and self.join is not None and self.join > self.start

    def without_start_and_join(self) -> "MilestoneDates":
        return MilestoneDates(
            incubating=self.incubating,
            graduated=self.graduated,
            archived=self.archived,
        )


@dataclass(frozen=True)
class QuickRange:
    suffix: str
    display_name: str
    duration: str = ""
    from_time: Optional[datetime] = None
    to_time: Optional[datetime] = None

    @property
    def volatile(self) -> bool:
        return self.suffix.endswith("_n")

    def data(self) -> str:
        from_text = to_ymdhms(self.from_time) if self.from_time is not None else ""
        to_text = to_ymdhms(self.to_time) if self.to_time is not None else ""
        return f"{self.suffix};{self.duration};{from_text};{to_text}"

    @classmethod
    def from_data(cls, data: str) -> "QuickRange":
        """Inverse of ``data()``; the display name is not part of the encoding."""
        parts = data.split(";")
        if len(parts) != 4:
            raise ValueError(f"invalid quick range data: {data!r}")
        suffix, duration, from_text, to_text = parts
        return cls(
            suffix=suffix,
            display_name="",
            duration=duration,
            from_time=parse_time_text(from_text) if from_text else None,
            to_time=parse_time_text(to_text) if to_text else None,
        )
