from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

# Weeks run Sunday through Saturday (date.weekday() numbering).
WEEK_STARTS_ON = 6


class ViewType(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


@dataclass(frozen=True)
class DateWindow:
    """Inclusive timestamp range in naive UTC; ``None`` leaves a side open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime; a bare date means midnight."""
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    try:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError as exc:
        raise ValueError(f"Timestamp out of range: {value.isoformat()}") from exc


def _week_start(day: date) -> date:
    return day - timedelta(days=(day.weekday() - WEEK_STARTS_ON) % 7)


def _next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def calendar_bounds(view_type: Optional[str], today: date) -> tuple[date, date]:
    """First day of the current bucket and first day of the next one."""
    if view_type == ViewType.weekly.value:
        first = _week_start(today)
        return first, first + timedelta(days=7)
    if view_type == ViewType.yearly.value:
        return date(today.year, 1, 1), date(today.year + 1, 1, 1)
    first = today.replace(day=1)
    return first, _next_month(first)


def resolve_window(
    view_type: Optional[str],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> DateWindow:
    if start is not None or end is not None:
        return DateWindow(
            start=to_utc_naive(start) if start is not None else None,
            end=to_utc_naive(end) if end is not None else None,
        )

    tz = tz or ZoneInfo(get_settings().timezone)
    if now is None:
        now = datetime.now(tz)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(tz).date()

    first, following = calendar_bounds(view_type, today)
    local_start = datetime.combine(first, time.min, tzinfo=tz)
    local_end = datetime.combine(following, time.min, tzinfo=tz) - timedelta(
        microseconds=1
    )
    return DateWindow(start=to_utc_naive(local_start), end=to_utc_naive(local_end))
