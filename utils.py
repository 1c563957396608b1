# utils.py
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

IST = ZoneInfo("Asia/Kolkata")


def utc_now() -> datetime:
    # DB timestamps are stored as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ist(dt):
    # Convert any datetime (naive=assumed UTC; aware=converted) to IST
    if not dt:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST)


def as_date(value) -> Optional[date]:
    # Accepts date, datetime or ISO string ("2024-06-10" or full timestamp)
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def inclusive_day_count(start: date, end: date) -> int:
    return (end - start).days + 1


def working_day_count(start: date, end: date) -> int:
    # Monday..Friday in [start, end]; 0 when end is before start
    total = inclusive_day_count(start, end)
    if total <= 0:
        return 0
    full_weeks, extra = divmod(total, 7)
    weekday = start.weekday()
    tail = sum(1 for i in range(extra) if (weekday + i) % 7 < 5)
    return full_weeks * 5 + tail
