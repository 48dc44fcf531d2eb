"""
Due and overdue detection for stored deadlines.

Deadlines are a calendar date plus an optional "HH:MM" time interpreted as UTC.
Push reminders need both a date and a valid time ("due"). The overdue view only
needs a date, and an unreadable time counts as already passed.
"""
from datetime import date, datetime, time
from typing import Optional

from core.time_utils import combine_utc, parse_hhmm, to_utc

def deadline_instant(deadline_date: Optional[date], deadline_time: Optional[str]) -> Optional[datetime]:
    """UTC instant of a deadline; midnight UTC when it carries no valid time."""
    if deadline_date is None:
        return None
    at = parse_hhmm(deadline_time) or time(0, 0)
    return combine_utc(deadline_date, at)

def is_due(now: datetime, deadline_date: Optional[date], deadline_time: Optional[str]) -> bool:
    if deadline_date is None:
        return False
    at = parse_hhmm(deadline_time)
    if at is None:
        # No time (or an unreadable one) is never due for push
        return False
    now = to_utc(now)
    if deadline_date > now.date():
        return False
    return now >= combine_utc(deadline_date, at)

def is_overdue(now: datetime, deadline_date: Optional[date], deadline_time: Optional[str]) -> bool:
    if deadline_date is None:
        return False
    now = to_utc(now)
    if deadline_date > now.date():
        return False
    at = parse_hhmm(deadline_time)
    if at is None:
        return True
    return now >= combine_utc(deadline_date, at)
