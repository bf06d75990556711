"""
Local-time schedule gate.

Runs are triggered externally (every minute); this module decides whether a
given instant matches the report schedule in the configured civil time zone.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.config import ScheduleSettings

logger = logging.getLogger(__name__)

WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")


@dataclass(frozen=True)
class LocalParts:
    """Civil calendar fields of an instant in a given zone."""

    year: int
    month: int
    day: int
    hour12: int
    minute: int
    day_period: str
    weekday: str

    @property
    def hour24(self) -> int:
        return (0 if self.hour12 == 12 else self.hour12) + (12 if self.day_period == "PM" else 0)


@dataclass(frozen=True)
class ScheduleRule:
    """A weekday bucket and the local trigger times (hour24, minute) that apply to it."""

    days: frozenset
    times: frozenset

    def matches(self, parts: LocalParts) -> bool:
        return parts.weekday in self.days and (parts.hour24, parts.minute) in self.times


@dataclass(frozen=True)
class Schedule:
    timezone: str
    rules: Tuple[ScheduleRule, ...]

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def parse_clock(value: str) -> Tuple[int, int]:
    """
    Parse a 12-hour clock string like "11:59 PM" into (hour24, minute).

    Raises:
        ValueError: if the string is not a valid 12-hour time
    """
    match = _TIME_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid schedule time '{value}' (expected 'hh:mm AM|PM')")
    hour12 = int(match.group(1))
    minute = int(match.group(2))
    period = match.group(3).upper()
    if not 1 <= hour12 <= 12 or not 0 <= minute <= 59:
        raise ValueError(f"Invalid schedule time '{value}'")
    hour24 = (0 if hour12 == 12 else hour12) + (12 if period == "PM" else 0)
    return hour24, minute


def build_schedule(settings: ScheduleSettings) -> Schedule:
    """Validate schedule settings into an immutable rule table."""
    try:
        ZoneInfo(settings.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone '{settings.timezone}'") from e

    rules: List[ScheduleRule] = []
    for rule in settings.rules:
        days = [d.strip()[:3].title() for d in rule.days]
        unknown = [d for d in days if d not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekday(s) in schedule: {', '.join(unknown)}")
        rules.append(
            ScheduleRule(
                days=frozenset(days),
                times=frozenset(parse_clock(t) for t in rule.times),
            )
        )
    return Schedule(timezone=settings.timezone, rules=tuple(rules))


def local_parts(now: datetime, tz: ZoneInfo) -> LocalParts:
    """Convert an aware instant into civil fields in ``tz`` (DST-safe)."""
    local = now.astimezone(tz)
    hour12 = local.hour % 12 or 12
    return LocalParts(
        year=local.year,
        month=local.month,
        day=local.day,
        hour12=hour12,
        minute=local.minute,
        day_period="PM" if local.hour >= 12 else "AM",
        weekday=WEEKDAYS[local.weekday()],
    )


def matching_rules(parts: LocalParts, rules: Iterable[ScheduleRule]) -> List[ScheduleRule]:
    return [rule for rule in rules if rule.matches(parts)]


def should_run(now: Optional[datetime], schedule: Schedule, force: bool = False) -> bool:
    """
    Return True when a run should proceed at ``now``.

    ``force`` bypasses the schedule. Anything other than an aware datetime
    never matches.
    """
    if force:
        return True
    if not isinstance(now, datetime) or now.tzinfo is None or now.utcoffset() is None:
        logger.debug("Schedule gate received naive, empty or non-datetime value: %r", now)
        return False
    try:
        parts = local_parts(now, schedule.tz)
    except (ZoneInfoNotFoundError, ValueError, OverflowError) as e:
        logger.warning("Schedule gate could not convert %s: %s", now, e)
        return False
    return bool(matching_rules(parts, schedule.rules))
