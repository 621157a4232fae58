"""
Position cursor store.

Persists the last durably captured binlog coordinate so that a capture
session can resume after a restart.

Record format (one line, whitespace separated):
    <log_identity> <offset>

Invariants:
    - save() replaces the record atomically (temp file + rename)
    - load() never raises: a missing or malformed record yields the
      initial position and a logged warning
    - No history is retained
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from ..source.base import LogPosition

logger = logging.getLogger(__name__)

POSITION_FILE_NAME = "binlog_position.txt"


class PositionStore:
    """Reads and writes the resumable cursor for one backup directory.

    Example:
        >>> store = PositionStore("/var/backups/mysql")
        >>> store.save(LogPosition("binlog.000005", 1000))
        >>> store.load()
        LogPosition(log_identity='binlog.000005', offset=1000)
    """

    def __init__(self, backup_dir: str | Path, file_name: str = POSITION_FILE_NAME) -> None:
        self.backup_dir = Path(backup_dir)
        self.path = self.backup_dir / file_name

    def save(self, position: LogPosition) -> None:
        """Durably write the cursor, replacing any previous record.

        Raises:
            OSError: If the record cannot be written
        """
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.backup_dir, prefix=".position-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(position.to_line())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(
            "Saved binlog position",
            extra={"position": str(position), "path": str(self.path)},
        )

    def load(self) -> LogPosition:
        """Read the cursor, falling back to the initial position."""
        try:
            line = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            logger.warning(
                "Binlog position file not found, starting from initial position",
                extra={"path": str(self.path)},
            )
            return LogPosition.initial()
        except OSError as e:
            logger.error(f"Failed to read binlog position file {self.path}: {e}")
            return LogPosition.initial()

        try:
            position = LogPosition.from_line(line)
        except ValueError as e:
            logger.error(f"Malformed binlog position record in {self.path}: {e}")
            return LogPosition.initial()

        logger.info(
            "Resuming from binlog position",
            extra={"log_identity": position.log_identity, "offset": position.offset},
        )
        return position
