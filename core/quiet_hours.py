from datetime import datetime

from core.time_utils import to_local

QUIET_START_HOUR = 22
QUIET_END_HOUR = 9

def is_quiet(now: datetime, tz_name: str, start_hour: int = QUIET_START_HOUR, end_hour: int = QUIET_END_HOUR) -> bool:
    """True when the local hour falls in [start_hour, end_hour), wrapping past midnight."""
    hour = to_local(now, tz_name).hour
    if start_hour <= end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour
