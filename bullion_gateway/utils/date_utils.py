"""Date manipulation utilities"""

import calendar
from datetime import datetime, time, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(from_dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month (Jan 31 + 1 -> Feb 28/29)"""
    month_index = from_dt.month - 1 + months
    year = from_dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(from_dt.day, calendar.monthrange(year, month)[1])
    return from_dt.replace(year=year, month=month, day=day)


def parse_hhmm(value: str) -> time:
    """Parse a 24-hour HH:MM string"""
    hours, minutes = value.split(":")
    return time(hour=int(hours), minute=int(minutes))
