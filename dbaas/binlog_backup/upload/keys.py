"""
Remote storage key derivation.

Backup artifacts are grouped by ISO-8601 year and week of the date
embedded in their file name:

    full backup   <YYYYMMDD_HHMMSS>_<scope>_full_backup.sql
                  -> <isoYear>/<isoWeek>/<file>
    segment       incr_backup_<log>_<seq>_<YYYYMMDD_HHMMSS>.log
                  -> <isoYear>/<isoWeek>/<Weekday>/<file>
    stream buffer (keyed by the current segment's name)
                  -> <isoYear>/<isoWeek>/weekly-binlog.log

Week numbers are zero-padded to two digits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

FULL_BACKUP_MARKER = "full_backup"
FULL_BACKUP_SUFFIX = "_full_backup.sql"
ALL_DATABASES_SCOPE = "all_databases"
INCREMENTAL_MARKER = "incr_backup"
STREAM_OBJECT_NAME = "weekly-binlog.log"

WEEKDAY_NAMES = (
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
)


class KeyDerivationError(ValueError):
    """A file name does not match any known backup artifact pattern."""

    pass


@dataclass(frozen=True)
class SegmentName:
    """Fields parsed from a segment file name."""

    log_identity: str
    sequence_number: int
    created_at: datetime

    @property
    def sort_key(self) -> tuple[str, datetime, int]:
        # Sequence numbers restart with the process; creation time orders
        # segments of one log written by different processes.
        return (self.log_identity, self.created_at, self.sequence_number)


def full_backup_file_name(scope: str, when: datetime) -> str:
    """Build the file name of a full backup dump."""
    return f"{when.strftime('%Y%m%d_%H%M%S')}_{scope}{FULL_BACKUP_SUFFIX}"


def _parse_date(token: str, file_name: str) -> date:
    try:
        return datetime.strptime(token, "%Y%m%d").date()
    except ValueError as e:
        raise KeyDerivationError(f"Failed to parse date {token!r} in {file_name}: {e}") from e


def _week_prefix(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}/{week:02d}"


def parse_segment_name(file_name: str) -> SegmentName:
    """Split a segment file name into its fields.

    Raises:
        KeyDerivationError: If the name is not a segment file name
    """
    prefix = f"{INCREMENTAL_MARKER}_"
    if not file_name.startswith(prefix) or not file_name.endswith(".log"):
        raise KeyDerivationError(f"Invalid incremental backup file name: {file_name}")

    body = file_name[len(prefix) : -len(".log")]
    parts = body.rsplit("_", 3)
    if len(parts) != 4 or not parts[0]:
        raise KeyDerivationError(f"Invalid incremental backup file name: {file_name}")

    log_identity, sequence, date_token, time_token = parts
    try:
        sequence_number = int(sequence)
        created_at = datetime.strptime(f"{date_token}_{time_token}", "%Y%m%d_%H%M%S")
    except ValueError as e:
        raise KeyDerivationError(f"Invalid incremental backup file name: {file_name}: {e}") from e

    return SegmentName(log_identity, sequence_number, created_at)


def full_backup_key(file_name: str) -> str:
    """Key for a full backup dump."""
    if FULL_BACKUP_MARKER not in file_name:
        raise KeyDerivationError(f"Not a full backup file name: {file_name}")
    date_token = file_name.split("_", 1)[0]
    return f"{_week_prefix(_parse_date(date_token, file_name))}/{file_name}"


def segment_key(file_name: str) -> str:
    """Key for a rotated segment file."""
    day = parse_segment_name(file_name).created_at.date()
    return f"{_week_prefix(day)}/{WEEKDAY_NAMES[day.weekday()]}/{file_name}"


def stream_key(segment_name: str) -> str:
    """Key of the rolling object holding the live buffer of a segment."""
    day = parse_segment_name(segment_name).created_at.date()
    return f"{_week_prefix(day)}/{STREAM_OBJECT_NAME}"


def storage_key(file_name: str) -> str:
    """Key for any backup artifact, dispatching on its name.

    Raises:
        KeyDerivationError: If the artifact type is unknown
    """
    if FULL_BACKUP_MARKER in file_name:
        return full_backup_key(file_name)
    if INCREMENTAL_MARKER in file_name:
        return segment_key(file_name)
    raise KeyDerivationError(f"Unknown backup file type: {file_name}")
