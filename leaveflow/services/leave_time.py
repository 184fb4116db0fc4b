from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Protocol

WORKDAY_MINUTES = 8 * 60
HALF_WORKDAY_MINUTES = WORKDAY_MINUTES // 2


class _Interval(Protocol):
    start_at: datetime
    end_at: datetime


def as_utc(value: datetime) -> datetime:
    # Naive values coming back from the database are stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_minutes(start_at: datetime, end_at: datetime) -> int:
    """Calendar minutes between two instants, rounded to the nearest minute."""
    delta_seconds = (as_utc(end_at) - as_utc(start_at)).total_seconds()
    return int(round(delta_seconds / 60))


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return as_utc(start_a) < as_utc(end_b) and as_utc(start_b) < as_utc(end_a)


def has_overlap(items: Iterable[_Interval], start_at: datetime, end_at: datetime) -> bool:
    return any(overlaps(start_at, end_at, item.start_at, item.end_at) for item in items)


def format_duration(minutes: int) -> str:
    safe_minutes = max(0, int(minutes))
    hours, remainder = divmod(safe_minutes, 60)
    if hours > 0 and remainder > 0:
        return f"{hours}h {remainder}m"
    if hours > 0:
        return f"{hours}h"
    return f"{remainder}m"


def format_duration_with_days(minutes: int) -> str:
    safe_minutes = max(0, int(minutes))
    days, remainder = divmod(safe_minutes, WORKDAY_MINUTES)
    if days == 0 and remainder == 0:
        return "0m"
    if remainder == 0:
        return f"{days}d"
    if remainder == HALF_WORKDAY_MINUTES:
        return f"{days}.5d"
    if days == 0:
        return format_duration(remainder)
    return f"{days}d {format_duration(remainder)}"


def format_datetime(value: datetime | None) -> str:
    if value is None:
        return "-"
    return as_utc(value).strftime("%Y-%m-%d %H:%M UTC")
