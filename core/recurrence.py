"""
Recurrence rules and the expansion of a rule into concrete dates.

Rule strings as stored on tasks:
- "daily", "weekly", "weekday" (Mon-Fri), "monthly"
- a comma separated set of weekday names ("monday,wednesday,friday")
- a lone weekday name ("monday") is read as a set of one day
Anything else advances by one week.
"""
import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterable, List, Optional, FrozenSet

# date.weekday(): Monday == 0
WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
SATURDAY = 5
SUNDAY = 6

class RuleKind(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    WEEKDAY = "weekday"
    MONTHLY = "monthly"
    CUSTOM = "custom"
    UNKNOWN = "unknown"

@dataclass(frozen=True)
class RecurrenceRule:
    kind: RuleKind
    weekdays: FrozenSet[int] = frozenset()

    @property
    def is_recurring(self) -> bool:
        return self.kind is not RuleKind.NONE

    @classmethod
    def parse(cls, raw: Optional[str]) -> "RecurrenceRule":
        if raw is None or not raw.strip():
            return cls(RuleKind.NONE)
        text = raw.strip().lower()

        # Commas always mean a custom weekday set, never a named form
        if "," in text or text in WEEKDAY_NAMES:
            days = frozenset(
                WEEKDAY_NAMES.index(name.strip())
                for name in text.split(",")
                if name.strip() in WEEKDAY_NAMES
            )
            return cls(RuleKind.CUSTOM, days)

        try:
            kind = RuleKind(text)
        except ValueError:
            return cls(RuleKind.UNKNOWN)
        if kind in (RuleKind.CUSTOM, RuleKind.UNKNOWN):
            return cls(RuleKind.UNKNOWN)
        return cls(kind)

def _add_month(current: date) -> date:
    # Clamp to the last day of a shorter month (Jan 31 -> Feb 28/29)
    year = current.year + (current.month // 12)
    month = current.month % 12 + 1
    day = min(current.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)

def next_occurrence(current: date, rule: RecurrenceRule) -> date:
    """Returns the occurrence that follows `current` under `rule`."""
    if rule.kind is RuleKind.DAILY:
        return current + timedelta(days=1)
    if rule.kind is RuleKind.WEEKLY:
        return current + timedelta(days=7)
    if rule.kind is RuleKind.WEEKDAY:
        nxt = current + timedelta(days=1)
        if nxt.weekday() == SATURDAY:
            nxt += timedelta(days=2)
        if nxt.weekday() == SUNDAY:
            nxt += timedelta(days=1)
        return nxt
    if rule.kind is RuleKind.MONTHLY:
        return _add_month(current)
    if rule.kind is RuleKind.CUSTOM and rule.weekdays:
        for offset in range(1, 8):
            candidate = current + timedelta(days=offset)
            if candidate.weekday() in rule.weekdays:
                return candidate
    # Unparseable rule, empty custom set, or no rule at all
    return current + timedelta(days=7)

def expand_window(
    anchor: date,
    rule: RecurrenceRule,
    window_end: date,
    already_used: Iterable[date],
    count: int,
    today: date,
) -> List[date]:
    """
    Lists up to `count` occurrences between max(anchor, today) and `window_end`
    (inclusive), skipping dates in `already_used`.
    """
    used = set(already_used)
    dates: List[date] = []
    if count <= 0:
        return dates

    if not rule.is_recurring:
        if today <= anchor <= window_end and anchor not in used:
            dates.append(anchor)
        return dates

    if rule.kind is RuleKind.CUSTOM and rule.weekdays:
        # Scan day by day so every selected weekday in the window is considered
        check = max(anchor, today)
        while check <= window_end and len(dates) < count:
            if check.weekday() in rule.weekdays and check not in used:
                dates.append(check)
            check += timedelta(days=1)
        return dates

    check = anchor
    while check < today:
        check = next_occurrence(check, rule)
    if rule.kind is RuleKind.WEEKDAY:
        # A weekend anchor rolls forward to Monday
        while check.weekday() >= SATURDAY:
            check += timedelta(days=1)
    while check <= window_end and len(dates) < count:
        if check not in used:
            dates.append(check)
        check = next_occurrence(check, rule)
    return dates
