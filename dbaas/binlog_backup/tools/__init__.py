"""
Operator tools for binlog backups.

Provides the restore tool that rebuilds databases from a full backup plus
the incremental binlog segments stored next to it.
"""

from .restore import (
    RestoreConfig,
    RestoreResult,
    RestoreTool,
    find_full_backup_file,
    find_segments,
    stitch_log,
)

__all__ = [
    "RestoreTool",
    "RestoreConfig",
    "RestoreResult",
    "find_full_backup_file",
    "find_segments",
    "stitch_log",
]
