"""
Full backup module.

This module takes the weekly mysqldump snapshot for:
- The base of every point-in-time restore
- Recording the binlog coordinate incremental capture resumes from
"""

from .commands import (
    BackupError,
    CommandResult,
    DumpCommandError,
    check_result,
    run_command,
)
from .dump import FullBackupExecutor, FullBackupResult, parse_dump_position, parse_status_output

__all__ = [
    "FullBackupExecutor",
    "FullBackupResult",
    "BackupError",
    "DumpCommandError",
    "CommandResult",
    "check_result",
    "run_command",
    "parse_dump_position",
    "parse_status_output",
]
