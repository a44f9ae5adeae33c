import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Union

from errors import ValidationError

MONTH_KEY_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
_MONTH_KEY_RE = re.compile(MONTH_KEY_PATTERN)

DateLike = Union[date, datetime, str]


@dataclass(frozen=True)
class CycleWindow:
    """Inclusive calendar-day range covered by a monthly plan."""

    start: date
    end: date

    def contains(self, value: DateLike) -> bool:
        day = to_calendar_day(value)
        return self.start <= day <= self.end


def parse_month_key(month_key: str) -> tuple[int, int]:
    if not month_key or not _MONTH_KEY_RE.match(month_key):
        raise ValidationError(f"Invalid month key: {month_key!r}")
    year_str, month_str = month_key.split("-", 1)
    return int(year_str), int(month_str)


def month_key_for(value: DateLike) -> str:
    day = to_calendar_day(value)
    return f"{day.year:04d}-{day.month:02d}"


def month_start(month_key: str) -> date:
    year, month = parse_month_key(month_key)
    return date(year, month, 1)


def month_end(month_key: str) -> date:
    year, month = parse_month_key(month_key)
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def month_index(month_key: str) -> int:
    year, month = parse_month_key(month_key)
    return year * 12 + (month - 1)


def cycle_window(
    month_key: str, cycle_start: Optional[date], cycle_end: Optional[date]
) -> CycleWindow:
    # An explicit cycle needs both ends; anything less means the calendar month.
    if cycle_start is not None and cycle_end is not None:
        return CycleWindow(cycle_start, cycle_end)
    return CycleWindow(month_start(month_key), month_end(month_key))


def to_calendar_day(value: DateLike) -> date:
    """Normalise to a timezone-naive calendar day.

    Aware datetimes are converted to UTC first so that comparisons behave like
    UTC-midnight timestamps.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return to_calendar_day(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError as exc:
            raise ValidationError(f"Invalid date: {value!r}") from exc
    raise ValidationError(f"Invalid date: {value!r}")


def resolve_range(
    start: Optional[str], end: Optional[str]
) -> tuple[Optional[date], Optional[date]]:
    start_date = to_calendar_day(start) if start else None
    end_date = to_calendar_day(end) if end else None
    if start_date and end_date and start_date > end_date:
        raise ValidationError("Start date must be before end date")
    return start_date, end_date
