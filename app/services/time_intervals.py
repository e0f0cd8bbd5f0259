from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum


class BusySource(StrEnum):
    local = "local"
    remote = "remote"


@dataclass(frozen=True)
class TimeInterval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(
                f"Interval start must be before end: {self.start.isoformat()} >= {self.end.isoformat()}",
            )

    @classmethod
    def from_duration(cls, start: datetime, duration_minutes: int) -> TimeInterval:
        return cls(start=start, end=start + timedelta(minutes=duration_minutes))

    def overlaps(self, other: TimeInterval) -> bool:
        return intervals_overlap(self, other)

    def expanded(self, minutes: int) -> TimeInterval:
        padding = timedelta(minutes=minutes)
        return TimeInterval(start=self.start - padding, end=self.end + padding)

    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass(frozen=True)
class BusyBlock:
    interval: TimeInterval
    source: BusySource
    reference_id: str | None = None

    @property
    def start(self) -> datetime:
        return self.interval.start

    @property
    def end(self) -> datetime:
        return self.interval.end


def intervals_overlap(first: TimeInterval, second: TimeInterval) -> bool:
    return first.start < second.end and second.start < first.end


def merge_intervals(intervals: Iterable[TimeInterval]) -> list[TimeInterval]:
    """Collapse intervals into a sorted list with no overlapping or touching members.

    Intervals that only share a boundary (``a.end == b.start``) are merged, so
    back-to-back bookings read as one continuous busy block.
    """
    ordered = sorted(intervals, key=lambda interval: (interval.start, interval.end))
    if not ordered:
        return []

    merged: list[TimeInterval] = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = TimeInterval(start=last.start, end=current.end)
            continue
        merged.append(current)
    return merged


def merge_busy_blocks(blocks: Iterable[BusyBlock]) -> list[BusyBlock]:
    # The surviving block keeps the tag of whichever block started first.
    ordered = sorted(blocks, key=lambda block: (block.start, block.end))
    if not ordered:
        return []

    merged: list[BusyBlock] = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = replace(
                    last,
                    interval=TimeInterval(start=last.start, end=current.end),
                )
            continue
        merged.append(current)
    return merged


def overlaps_any(interval: TimeInterval, blocks: Iterable[BusyBlock]) -> bool:
    return any(intervals_overlap(interval, block.interval) for block in blocks)
