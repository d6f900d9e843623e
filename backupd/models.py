"""
Value types shared by the job loader, scheduler and executor.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Union


_FIXED_TIME_RE = re.compile(r'^([0-9]{2}):([0-9]{2})$')

ROOT_BASENAME = 'root'


def source_basename(source_dir: str) -> str:
    """Last path component of a source directory, ignoring trailing separators."""
    return os.path.basename(os.path.normpath(source_dir)) or ROOT_BASENAME


@dataclass(frozen=True)
class FixedTime:
    """Run once a day when the clock reads HH:MM."""
    hour: int
    minute: int

    def __str__(self):
        return f'{self.hour:02d}:{self.minute:02d}'


@dataclass(frozen=True)
class Hourly:
    """Run on every poll tick."""

    def __str__(self):
        return 'hourly'


@dataclass(frozen=True)
class Daily:
    """Run at 00:00."""

    def __str__(self):
        return 'daily'


@dataclass(frozen=True)
class Weekly:
    """Run at 00:00 on Mondays."""

    def __str__(self):
        return 'weekly'


@dataclass(frozen=True)
class UnknownSchedule:
    """A schedule string that matched none of the known forms. Never due."""
    raw: str

    def __str__(self):
        return self.raw


ScheduleSpec = Union[FixedTime, Hourly, Daily, Weekly, UnknownSchedule]

_NAMED_SCHEDULES = {
    'hourly': Hourly(),
    'daily': Daily(),
    'weekly': Weekly(),
}


def parse_schedule(raw: str) -> ScheduleSpec:
    """
    Parse a schedule field from the job list.

    Named forms are case-sensitive. ``HH:MM`` must be two digits, a colon
    and two digits, and name a real time of day.

    Args:
        raw: Schedule field, already trimmed

    Returns:
        The matching schedule, or UnknownSchedule
    """
    if raw in _NAMED_SCHEDULES:
        return _NAMED_SCHEDULES[raw]

    match = _FIXED_TIME_RE.match(raw)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour < 24 and minute < 60:
            return FixedTime(hour, minute)

    return UnknownSchedule(raw)


@dataclass
class Job:
    """One configured backup unit."""
    source_dir: str
    backup_dir: str
    secret: str = field(repr=False)
    schedule: ScheduleSpec
    retention: int = 1
    line_number: int = 0

    @property
    def basename(self) -> str:
        """Name of the source directory, used in artifact filenames."""
        return source_basename(self.source_dir)

    def __str__(self):
        return f"{self.source_dir} -> {self.backup_dir} ({self.schedule}, keep {self.retention})"
