"""
Backup scheduling module.

This module fires the weekly full backup and owns the live capture
session for:
- Keeping exactly one incremental capture running
- Starting each week's capture from the new full backup's cursor
"""

from .scheduler import WEEK, BackupScheduler
from .spec import ScheduleError, ScheduleSpec, next_fire_time, parse_time_of_day, parse_weekday

__all__ = [
    "BackupScheduler",
    "ScheduleSpec",
    "ScheduleError",
    "WEEK",
    "next_fire_time",
    "parse_weekday",
    "parse_time_of_day",
]
