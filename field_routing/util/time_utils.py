"""Tiny time helpers for schedules, windows and planning periods."""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional


def parse_hhmm(s: str) -> int:
    t = time.fromisoformat(s)  # 'HH:MM' -> time
    return t.hour * 60 + t.minute  # minutes since midnight


def format_hhmm(minutes: float) -> str:
    m = int(round(minutes)) % (24 * 60)
    return f"{m // 60:02d}:{m % 60:02d}"


def in_window(mins: int, window: str) -> bool:
    a, b = window.split("-")  # 'HH:MM-HH:MM'
    start = parse_hhmm(a)
    end = parse_hhmm(b)
    if start <= end:
        return start <= mins < end
    return mins >= start or mins < end  # wrap-over-midnight


def at_minute(day: str, minutes: float) -> datetime:
    """UTC datetime for a YYYY-MM-DD day plus minutes since midnight."""
    base = datetime.combine(date.fromisoformat(day), time(0, 0), tzinfo=timezone.utc)
    return base + timedelta(minutes=round(minutes, 2))


def minute_of_day(dt: datetime) -> float:
    return dt.hour * 60 + dt.minute + dt.second / 60.0


def parse_date(value: str) -> date:
    return date.fromisoformat(value)


def month_days(month: str) -> List[str]:
    """All YYYY-MM-DD days in a YYYY-MM month."""
    year, mon = (int(p) for p in month.split("-"))
    _, last = calendar.monthrange(year, mon)
    return [date(year, mon, d).isoformat() for d in range(1, last + 1)]


def month_of(day: str) -> str:
    return day[:7]


def minutes_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return max(0.0, (end - start).total_seconds() / 60.0)
