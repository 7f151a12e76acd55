"""Dashboard time ranges, absolute bounds and fixed-offset day keys.

Day bucketing uses a fixed UTC offset (JST by default) rather than a
timezone database: the reporting property is configured in a zone without
daylight saving, so the offset never changes.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum

DAY = timedelta(days=1)
DEFAULT_UTC_OFFSET = timedelta(hours=9)


class TimeRange(str, Enum):
    LAST_24_HOURS = "24h"
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"


DEFAULT_RANGE = TimeRange.LAST_30_DAYS

RANGE_DURATIONS: dict[TimeRange, timedelta] = {
    TimeRange.LAST_24_HOURS: DAY,
    TimeRange.LAST_7_DAYS: 7 * DAY,
    TimeRange.LAST_30_DAYS: 30 * DAY,
    TimeRange.LAST_90_DAYS: 90 * DAY,
}


def parse_range(value: str | None) -> TimeRange:
    """Parse a range selector, falling back to the 30 day default."""
    try:
        return TimeRange(value)
    except ValueError:
        return DEFAULT_RANGE


def requires_sub_day_precision(time_range: TimeRange) -> bool:
    """Whether the range cannot be expressed in whole reporting days."""
    return time_range is TimeRange.LAST_24_HOURS


def _as_utc(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    return _as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RangeBounds:
    range: TimeRange
    now: datetime
    duration: timedelta
    current_start: datetime
    previous_start: datetime

    @property
    def duration_ms(self) -> int:
        return int(self.duration.total_seconds() * 1000)

    @property
    def now_iso(self) -> str:
        return to_iso(self.now)

    @property
    def current_start_iso(self) -> str:
        return to_iso(self.current_start)

    @property
    def previous_start_iso(self) -> str:
        return to_iso(self.previous_start)


def get_range_bounds(time_range: TimeRange, now: datetime | None = None) -> RangeBounds:
    """Compute the current and previous windows ending at ``now``."""
    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    duration = RANGE_DURATIONS[time_range]
    current_start = now - duration
    return RangeBounds(
        range=time_range,
        now=now,
        duration=duration,
        current_start=current_start,
        previous_start=current_start - duration,
    )


def _local_date(value: datetime | str, offset: timedelta) -> date:
    return (_as_utc(value) + offset).date()


def to_date_key(value: datetime | str, offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    """Return the ``YYYY-MM-DD`` day key of an instant at a fixed offset."""
    return _local_date(value, offset).isoformat()


def to_date_suffix(value: datetime | str, offset: timedelta = DEFAULT_UTC_OFFSET) -> str:
    """Return the ``YYYYMMDD`` partition suffix of an instant at a fixed offset."""
    return _local_date(value, offset).strftime("%Y%m%d")


def enumerate_date_keys(
    start: datetime | str,
    end: datetime | str,
    offset: timedelta = DEFAULT_UTC_OFFSET,
) -> list[str]:
    """List every day key from ``start`` to ``end`` inclusive, without gaps."""
    current = _local_date(start, offset)
    last = _local_date(end, offset)

    keys: list[str] = []
    while current <= last:
        keys.append(current.isoformat())
        current += DAY
    return keys


def format_date_label(key: str) -> str:
    """Render a ``YYYY-MM-DD`` key as a short ``M/D`` axis label."""
    _, month, day = key.split("-")
    return f"{int(month)}/{int(day)}"
