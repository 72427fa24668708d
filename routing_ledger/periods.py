"""
Report period helpers for cl-routing-ledger

Turns local calendar dates into UTC timestamp windows and maps range tags
(d-1, month, 3m, 6m, 12m, all) or explicit [from, to] dates to date windows.
All day boundaries are local midnights in the configured zone, so DST days
are 23 or 25 hours long.
"""

import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, tzinfo
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_MAX_RANGE_DAYS = 730


class RangeValidationError(ValueError):
    """Raised for malformed dates, inverted ranges, or ranges longer than max_days."""


class ReportRange(str, Enum):
    """Enumerated report ranges. All of them end on yesterday except ALL."""
    D_MINUS_1 = "d-1"
    MONTH = "month"
    THREE_MONTHS = "3m"
    SIX_MONTHS = "6m"
    TWELVE_MONTHS = "12m"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> 'ReportRange':
        key = (value or "").strip().lower()
        key = RANGE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = ", ".join(r.value for r in cls)
            raise RangeValidationError(f"Unknown range '{value}' (expected one of: {valid})")


RANGE_ALIASES = {
    "yesterday": "d-1",
    "30d": "month",
    "trailing-30-days": "month",
    "3-months": "3m",
    "6-months": "6m",
    "12-months": "12m",
}

# Days before yesterday covered by each range (window is yesterday-N .. yesterday)
RANGE_LOOKBACK_DAYS = {
    ReportRange.D_MINUS_1: 0,
    ReportRange.MONTH: 29,
    ReportRange.THREE_MONTHS: 89,
    ReportRange.SIX_MONTHS: 179,
    ReportRange.TWELVE_MONTHS: 364,
}


@dataclass(frozen=True)
class DateWindow:
    """A closed interval of local calendar dates; None means unbounded on that side."""
    start: Optional[date]
    end: Optional[date]

    def includes(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True

    def to_dict(self):
        return {
            "from": self.start.isoformat() if self.start else None,
            "to": self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class TimeRange:
    """Half-open UTC interval [start_ts, end_ts) in unix seconds."""
    start_ts: int
    end_ts: int
    start_local: datetime
    end_local: datetime

    @property
    def duration_seconds(self) -> int:
        return self.end_ts - self.start_ts


def resolve_timezone(tz_name: Optional[str]) -> Optional[tzinfo]:
    """
    Resolve an IANA zone name.

    Returns None for an empty name, meaning "system local time". Unknown
    names raise ValueError so a typo never silently shifts day boundaries.
    """
    if not tz_name:
        return None
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone '{tz_name}': {e}")


def local_now(tz: Optional[tzinfo], now: Optional[float] = None) -> datetime:
    """Aware datetime for now (or the given unix time) in tz (None = system local)."""
    ts = time.time() if now is None else now
    if tz is None:
        return datetime.fromtimestamp(ts).astimezone()
    return datetime.fromtimestamp(ts, tz)


def local_today(tz: Optional[tzinfo], now: Optional[float] = None) -> date:
    return local_now(tz, now).date()


def local_midnight(day: date, tz: Optional[tzinfo]) -> datetime:
    """Aware datetime for 00:00 local on day."""
    naive = datetime.combine(day, dt_time.min)
    if tz is None:
        return naive.astimezone()
    return naive.replace(tzinfo=tz)


def build_time_range_for_date(day: date, tz: Optional[tzinfo]) -> TimeRange:
    """[local midnight of day, next local midnight) as UTC timestamps."""
    start_local = local_midnight(day, tz)
    end_local = local_midnight(day + timedelta(days=1), tz)
    return TimeRange(
        start_ts=int(start_local.timestamp()),
        end_ts=int(end_local.timestamp()),
        start_local=start_local,
        end_local=end_local,
    )


def build_time_range_for_today(tz: Optional[tzinfo], now: Optional[float] = None) -> TimeRange:
    """[today's local midnight, now)."""
    now_local = local_now(tz, now)
    start_local = local_midnight(now_local.date(), tz)
    return TimeRange(
        start_ts=int(start_local.timestamp()),
        end_ts=int(now_local.timestamp()),
        start_local=start_local,
        end_local=now_local,
    )


def build_time_range_for_lookback(hours: int, tz: Optional[tzinfo],
                                  now: Optional[float] = None) -> TimeRange:
    """[now - hours, now)."""
    if hours <= 0:
        raise RangeValidationError("lookback hours must be positive")
    now_local = local_now(tz, now)
    start_local = now_local - timedelta(hours=hours)
    return TimeRange(
        start_ts=int(start_local.timestamp()),
        end_ts=int(now_local.timestamp()),
        start_local=start_local,
        end_local=now_local,
    )


def parse_date(value) -> date:
    """Parse a YYYY-MM-DD string (date objects pass through)."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except ValueError:
        raise RangeValidationError(f"Invalid date '{value}' (expected YYYY-MM-DD)")


def validate_custom_range(start: date, end: date,
                          max_days: int = DEFAULT_MAX_RANGE_DAYS) -> int:
    """
    Check a closed [start, end] date range.

    Returns:
        Number of days in the range (inclusive)

    Raises:
        RangeValidationError: start after end, or more than max_days days
    """
    if start > end:
        raise RangeValidationError(
            f"Invalid range: from {start.isoformat()} is after to {end.isoformat()}"
        )
    days = (end - start).days + 1
    if days > max_days:
        raise RangeValidationError(
            f"Range {start.isoformat()}..{end.isoformat()} spans {days} days "
            f"(max {max_days})"
        )
    return days


def resolve_range_window(report_range: ReportRange, today: date) -> DateWindow:
    """Map a range tag to a date window relative to today."""
    if report_range == ReportRange.ALL:
        return DateWindow(start=None, end=None)
    yesterday = today - timedelta(days=1)
    start = yesterday - timedelta(days=RANGE_LOOKBACK_DAYS[report_range])
    return DateWindow(start=start, end=yesterday)


def iter_dates(start: date, end: date):
    """Yield every date from start to end inclusive, ascending."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)
