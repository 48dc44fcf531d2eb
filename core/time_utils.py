from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo

UTC = ZoneInfo("UTC")

def get_current_time() -> datetime:
    """Returns the current time in UTC."""
    return datetime.now(UTC)

def to_utc(dt: datetime) -> datetime:
    """Converts a datetime object to UTC."""
    if dt.tzinfo is None:
        # Assume naive datetimes from DB are UTC
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)

def to_local(dt: datetime, tz_name: str) -> datetime:
    return to_utc(dt).astimezone(ZoneInfo(tz_name))

def parse_date(value) -> Optional[date]:
    """
    Parses a stored calendar date ("YYYY-MM-DD", date or datetime).
    Returns None for anything malformed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None

def parse_hhmm(value) -> Optional[time]:
    """
    Parses "HH:MM" (or "HH:MM:SS" as Postgres-style columns return it).
    Returns None for empty or malformed strings.
    """
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        return None
    return time(hours, minutes)

def format_hhmm(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"

def combine_utc(day: date, at: time) -> datetime:
    return datetime.combine(day, at, tzinfo=UTC)
