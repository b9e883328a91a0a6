"""
Minute-of-day schedule for session loops.

A schedule is a bitmap of 1440 booleans, index = minutes since local
midnight (0 = 00:00, 60 = 01:00, ...). Evaluation always uses the local
wall clock; the recorded timezone is informational only.

Fail-open rules:
- no schedule, or schedule disabled  -> active
- minute index outside 0..1439       -> active
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from .exceptions import ConfigurationError

MINUTES_PER_DAY = 1440

RANGE_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


def minute_of_day(when: datetime) -> int:
    """Minutes since local midnight for a datetime."""
    return when.hour * 60 + when.minute


@dataclass
class ScheduleConfig:
    """Per-session active-minutes bitmap."""

    enabled: bool = False
    minutes: list[bool] = field(default_factory=lambda: [True] * MINUTES_PER_DAY)
    timezone: str = ""  # Label recorded when the schedule was edited

    def __post_init__(self):
        if len(self.minutes) != MINUTES_PER_DAY:
            raise ConfigurationError(
                f"schedule must have exactly {MINUTES_PER_DAY} minutes, got {len(self.minutes)}"
            )
        self.minutes = [bool(m) for m in self.minutes]

    def is_active_at(self, minute: int) -> bool:
        """Whether a minute index is active. Out-of-range indices fail open."""
        if not 0 <= minute < MINUTES_PER_DAY:
            return True
        return self.minutes[minute]

    def toggle(self, minute: int) -> None:
        if 0 <= minute < MINUTES_PER_DAY:
            self.minutes[minute] = not self.minutes[minute]

    def set_range(self, start: int, end: int, active: bool = True) -> None:
        """Set minutes in [start, end). Wraps past midnight when end <= start."""
        if end <= start:
            indices: Iterable[int] = list(range(start, MINUTES_PER_DAY)) + list(range(0, end))
        else:
            indices = range(start, end)
        for i in indices:
            if 0 <= i < MINUTES_PER_DAY:
                self.minutes[i] = active

    def active_minutes(self) -> int:
        return sum(self.minutes)

    # --- Serialization ---

    @classmethod
    def from_ranges(cls, ranges: list[str], enabled: bool = True, timezone: str = "") -> "ScheduleConfig":
        """Build a schedule where only the given "HH:MM-HH:MM" ranges are active."""
        schedule = cls(enabled=enabled, minutes=[False] * MINUTES_PER_DAY, timezone=timezone)
        for text in ranges:
            start, end = parse_range(text)
            schedule.set_range(start, end, True)
        return schedule

    def to_ranges(self) -> list[str]:
        """Compact "HH:MM-HH:MM" representation of the active minutes."""
        ranges = []
        start: Optional[int] = None
        for i, active in enumerate(self.minutes + [False]):
            if active and start is None:
                start = i
            elif not active and start is not None:
                ranges.append(f"{_fmt(start)}-{_fmt(i)}")
                start = None
        return ranges

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "ScheduleConfig":
        """Parse the YAML form: {enabled, active: [ranges]} or {enabled, minutes: [1440 bools]}."""
        if not raw:
            return cls()
        enabled = bool(raw.get("enabled", False))
        timezone = raw.get("timezone", "") or ""
        if raw.get("minutes") is not None:
            return cls(enabled=enabled, minutes=list(raw["minutes"]), timezone=timezone)
        if raw.get("active") is not None:
            return cls.from_ranges(list(raw["active"]), enabled=enabled, timezone=timezone)
        return cls(enabled=enabled, timezone=timezone)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "timezone": self.timezone,
            "active": self.to_ranges(),
        }


def _fmt(minute: int) -> str:
    if minute >= MINUTES_PER_DAY:
        return "24:00"
    return f"{minute // 60:02d}:{minute % 60:02d}"


def parse_range(text: str) -> tuple[int, int]:
    """Parse "HH:MM-HH:MM" into (start_minute, end_minute). 24:00 is allowed as an end."""
    match = RANGE_PATTERN.match(text)
    if not match:
        raise ConfigurationError(f"invalid schedule range '{text}' (expected HH:MM-HH:MM)")
    h1, m1, h2, m2 = (int(g) for g in match.groups())
    if h1 > 23 or m1 > 59 or h2 > 24 or m2 > 59 or (h2 == 24 and m2 != 0):
        raise ConfigurationError(f"invalid schedule range '{text}'")
    return h1 * 60 + m1, h2 * 60 + m2


def is_schedule_active(schedule: Optional[ScheduleConfig], now: Optional[datetime] = None) -> bool:
    """Whether a session may send right now according to its schedule."""
    if schedule is None or not schedule.enabled:
        return True
    now = now or datetime.now()
    return schedule.is_active_at(minute_of_day(now))
