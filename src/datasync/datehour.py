"""
Hour-resolution time arithmetic.

Every timestamp handled by the sync engine is a naive UTC datetime truncated
to the hour ("date hour"). Ranges are inclusive of both end hours, so the
range 2024-01-02:03 - 2024-01-02:03 covers exactly one hour of data.
"""
from __future__ import annotations

import calendar
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum

DATE_HOUR_FORMAT = "%Y-%m-%d:%H"
ONE_HOUR = timedelta(hours=1)


class Granularity(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


BUCKET_KEY_FORMATS: dict[Granularity, str] = {
    Granularity.HOURLY: "%Y%m%d%H",
    Granularity.DAILY: "%Y%m%d",
    Granularity.WEEKLY: "%G%V",
    Granularity.MONTHLY: "%Y%m",
    Granularity.YEARLY: "%Y",
}


class Chunking(str, Enum):
    DISABLED = "Disable"
    HOURLY = "Hourly"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"

    @classmethod
    def parse(cls, text: str) -> "Chunking":
        normalized = text.strip().lower()
        if normalized in ("disable", "disabled", "none"):
            return cls.DISABLED
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unsupported chunking '{text}', must be one of: {[m.value for m in cls]}")

    @property
    def granularity(self) -> Granularity:
        # Disabled chunking counts lookback in hours
        return _CHUNKING_GRANULARITY[self]


_CHUNKING_GRANULARITY: dict[Chunking, Granularity] = {
    Chunking.DISABLED: Granularity.HOURLY,
    Chunking.HOURLY: Granularity.HOURLY,
    Chunking.DAILY: Granularity.DAILY,
    Chunking.WEEKLY: Granularity.WEEKLY,
    Chunking.MONTHLY: Granularity.MONTHLY,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def truncate_to_hour(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(minute=0, second=0, microsecond=0)


def parse_date_hour(text: str) -> datetime:
    try:
        return datetime.strptime(text.strip(), DATE_HOUR_FORMAT)
    except ValueError as e:
        raise ValueError(f"Invalid date hour '{text}', expected yyyy-MM-dd:HH") from e


def format_date_hour(value: datetime) -> str:
    return value.strftime(DATE_HOUR_FORMAT)


def hours_between(start: datetime, end: datetime) -> list[datetime]:
    """All hours from start to end, both included."""
    hours: list[datetime] = []
    current = truncate_to_hour(start)
    last = truncate_to_hour(end)
    while current <= last:
        hours.append(current)
        current += ONE_HOUR
    return hours


def full_dates(hours: list[datetime]) -> list[date]:
    """Dates for which all 24 hours are present."""
    by_date: dict[date, set[int]] = defaultdict(set)
    for hour in hours:
        by_date[hour.date()].add(hour.hour)
    return sorted(d for d, present in by_date.items() if len(present) == 24)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def bucket_start(value: datetime, granularity: Granularity) -> datetime:
    hour = truncate_to_hour(value)
    if granularity is Granularity.HOURLY:
        return hour
    day = hour.replace(hour=0)
    if granularity is Granularity.DAILY:
        return day
    if granularity is Granularity.WEEKLY:
        return day - timedelta(days=day.weekday())
    if granularity is Granularity.MONTHLY:
        return day.replace(day=1)
    if granularity is Granularity.YEARLY:
        return day.replace(month=1, day=1)
    raise ValueError(f"Unsupported granularity: {granularity}")


def shift_buckets(start: datetime, granularity: Granularity, count: int) -> datetime:
    """Moves a bucket start `count` buckets forward (or backward when negative)."""
    if granularity is Granularity.HOURLY:
        return start + timedelta(hours=count)
    if granularity is Granularity.DAILY:
        return start + timedelta(days=count)
    if granularity is Granularity.WEEKLY:
        return start + timedelta(weeks=count)
    if granularity is Granularity.MONTHLY:
        return add_months(start, count)
    if granularity is Granularity.YEARLY:
        return add_months(start, 12 * count)
    raise ValueError(f"Unsupported granularity: {granularity}")


def bucket_key(value: datetime, granularity: Granularity) -> str:
    return truncate_to_hour(value).strftime(BUCKET_KEY_FORMATS[granularity])


def chunk_start(now: datetime, units_ago: int, chunking: Chunking) -> datetime:
    """First hour of the chunk `units_ago` chunks before the one holding `now`."""
    granularity = chunking.granularity
    return shift_buckets(bucket_start(now, granularity), granularity, -units_ago)


def chunk_end(now: datetime, chunking: Chunking) -> datetime:
    """Last hour of the chunk holding `now`."""
    granularity = chunking.granularity
    return shift_buckets(bucket_start(now, granularity), granularity, 1) - ONE_HOUR


@dataclass(frozen=True)
class TimeChunk:
    """Hours `start` through `end`, both included; the unit of load atomicity."""
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Negative time range: {format_date_hour(self.start)} is after {format_date_hour(self.end)}")

    def split(self, chunking: Chunking) -> list["TimeChunk"]:
        if chunking is Chunking.DISABLED:
            return [self]

        granularity = chunking.granularity
        chunks: list[TimeChunk] = []
        cursor = self.start
        while cursor <= self.end:
            next_start = shift_buckets(bucket_start(cursor, granularity), granularity, 1)
            chunks.append(TimeChunk(cursor, min(next_start - ONE_HOUR, self.end)))
            cursor = next_start
        return chunks

    def __str__(self) -> str:
        return f"{format_date_hour(self.start)} - {format_date_hour(self.end)}"
