from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.time_intervals import TimeInterval

_WEEKDAY_KEYS: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_WEEKDAY_NAMES: tuple[str, ...] = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


class BusinessHoursError(ValueError):
    pass


@dataclass(frozen=True)
class BusinessDay:
    weekday: int
    open: time
    close: time

    def __post_init__(self) -> None:
        if not 0 <= self.weekday <= 6:
            raise BusinessHoursError(f"Weekday must be between 0 and 6, got {self.weekday}.")
        if self.open >= self.close:
            raise BusinessHoursError(
                f"{_WEEKDAY_NAMES[self.weekday]} opens at {self.open} but closes at {self.close}.",
            )


@dataclass(frozen=True)
class HoursCheck:
    ok: bool
    reason: str | None = None


WeeklySchedule = Mapping[int, BusinessDay | None]


class BusinessHoursPolicy:
    """Per-weekday opening hours evaluated in the business's own timezone.

    Weekdays follow ``date.weekday()``: Monday is 0 and Sunday is 6. A weekday
    missing from the schedule or mapped to ``None`` is closed.
    """

    def __init__(self, schedule: WeeklySchedule, timezone: str | ZoneInfo) -> None:
        days: dict[int, BusinessDay | None] = {weekday: None for weekday in range(7)}
        for weekday, business_day in schedule.items():
            if business_day is not None and business_day.weekday != weekday:
                raise BusinessHoursError(
                    f"Schedule entry for weekday {weekday} describes weekday {business_day.weekday}.",
                )
            days[weekday] = business_day
        self._days = days
        self.timezone = _to_zoneinfo(timezone)

    def day(self, weekday: int) -> BusinessDay | None:
        return self._days.get(weekday)

    def to_local(self, value: datetime) -> datetime:
        # Naive values are business wall-clock time, never the host's zone.
        if value.tzinfo is None:
            return value.replace(tzinfo=self.timezone)
        return value.astimezone(self.timezone)

    def local_date(self, value: datetime) -> date:
        return self.to_local(value).date()

    def window_for(self, day: date) -> TimeInterval | None:
        if isinstance(day, datetime):
            day = self.local_date(day)
        business_day = self._days.get(day.weekday())
        if business_day is None:
            return None
        return self._window(day, business_day)

    def is_within_hours(self, interval: TimeInterval) -> HoursCheck:
        local_start = self.to_local(interval.start)
        business_day = self._days.get(local_start.weekday())
        if business_day is None:
            return HoursCheck(
                ok=False,
                reason=f"We are closed on {_WEEKDAY_NAMES[local_start.weekday()]}s",
            )

        window = self._window(local_start.date(), business_day)
        if local_start < window.start:
            return HoursCheck(
                ok=False,
                reason=f"We don't open until {format_clock_time(business_day.open)}",
            )
        if self.to_local(interval.end) > window.end:
            return HoursCheck(
                ok=False,
                reason=f"We close at {format_clock_time(business_day.close)}",
            )
        return HoursCheck(ok=True)

    def _window(self, day: date, business_day: BusinessDay) -> TimeInterval:
        return TimeInterval(
            start=datetime.combine(day, business_day.open, tzinfo=self.timezone),
            end=datetime.combine(day, business_day.close, tzinfo=self.timezone),
        )


def format_clock_time(value: time) -> str:
    hour = value.hour % 12 or 12
    suffix = "am" if value.hour < 12 else "pm"
    if value.minute:
        return f"{hour}:{value.minute:02d}{suffix}"
    return f"{hour}{suffix}"


def parse_weekly_schedule(raw_schedule: str) -> dict[int, BusinessDay | None]:
    """Parse ``"mon-fri=10:00-17:00;sat=10:00-15:00;sun=closed"`` into a schedule.

    Day ranges wrap around the week (``fri-mon``). Days that are never mentioned
    are closed. A later entry for the same day replaces an earlier one.
    """
    schedule: dict[int, BusinessDay | None] = {weekday: None for weekday in range(7)}
    for raw_entry in raw_schedule.split(";"):
        entry = raw_entry.strip().lower()
        if not entry:
            continue
        if "=" not in entry:
            raise BusinessHoursError(f"Business hours entry is missing '=': {raw_entry!r}")
        raw_days, raw_hours = (part.strip() for part in entry.split("=", maxsplit=1))
        weekdays = _parse_weekday_range(raw_days)
        if raw_hours == "closed":
            for weekday in weekdays:
                schedule[weekday] = None
            continue

        open_time, close_time = _parse_hours_range(raw_hours)
        for weekday in weekdays:
            schedule[weekday] = BusinessDay(weekday=weekday, open=open_time, close=close_time)
    return schedule


def _parse_weekday_range(raw_days: str) -> list[int]:
    if "-" not in raw_days:
        return [_parse_weekday(raw_days)]
    raw_first, raw_last = raw_days.split("-", maxsplit=1)
    first = _parse_weekday(raw_first)
    last = _parse_weekday(raw_last)
    span = (last - first) % 7
    return [(first + offset) % 7 for offset in range(span + 1)]


def _parse_weekday(raw_day: str) -> int:
    key = raw_day.strip()[:3]
    try:
        return _WEEKDAY_KEYS.index(key)
    except ValueError:
        raise BusinessHoursError(f"Unknown weekday in business hours: {raw_day!r}") from None


def _parse_hours_range(raw_hours: str) -> tuple[time, time]:
    if "-" not in raw_hours:
        raise BusinessHoursError(f"Business hours must look like 10:00-17:00, got {raw_hours!r}")
    raw_open, raw_close = raw_hours.split("-", maxsplit=1)
    try:
        return time.fromisoformat(raw_open.strip()), time.fromisoformat(raw_close.strip())
    except ValueError as exc:
        raise BusinessHoursError(f"Invalid business hours time in {raw_hours!r}") from exc


def _to_zoneinfo(timezone: str | ZoneInfo) -> ZoneInfo:
    if isinstance(timezone, ZoneInfo):
        return timezone
    try:
        return ZoneInfo(timezone.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise BusinessHoursError(f"Unknown business timezone: {timezone!r}") from exc
