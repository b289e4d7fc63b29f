"""
Reporting date ranges.

Ranges are inclusive local calendar days. Queries against the event store
use the UTC bounds [first day 00:00 local, day after last day 00:00 local).

Presets:
  - today
  - 7d / 30d / 90d (today plus the N previous days)
  - all (since 2020-01-01)
  - YYYY-MM-DD_YYYY-MM-DD (custom)
Anything else falls back to 30d.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

DEFAULT_PRESET = "30d"
ALL_TIME_START = date(2020, 1, 1)
PRESET_DAYS = {"7d": 7, "30d": 30, "90d": 90}


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Date range start {self.start} is after end {self.end}")

    @property
    def num_days(self) -> int:
        return (self.end - self.start).days + 1

    def days(self) -> list[date]:
        return [self.start + timedelta(days=offset) for offset in range(self.num_days)]

    def utc_bounds(self, tz_name: str = "UTC") -> tuple[datetime, datetime]:
        """Naive-UTC [start, end) bounds covering every local day in the range."""
        tz = ZoneInfo(tz_name)
        start_local = datetime.combine(self.start, time.min, tzinfo=tz)
        end_local = datetime.combine(self.end + timedelta(days=1), time.min, tzinfo=tz)
        return (
            start_local.astimezone(timezone.utc).replace(tzinfo=None),
            end_local.astimezone(timezone.utc).replace(tzinfo=None),
        )


def parse_date_range(value: str | None, today: date | None = None) -> DateRange:
    today = today or date.today()

    if value and "_" in value:
        start_str, _, end_str = value.partition("_")
        try:
            return DateRange(date.fromisoformat(start_str), date.fromisoformat(end_str))
        except ValueError:
            pass

    if value == "today":
        return DateRange(today, today)
    if value == "all":
        return DateRange(min(ALL_TIME_START, today), today)

    days = PRESET_DAYS.get(value or DEFAULT_PRESET, PRESET_DAYS[DEFAULT_PRESET])
    return DateRange(today - timedelta(days=days), today)
