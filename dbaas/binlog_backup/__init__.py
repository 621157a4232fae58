"""
Binlog Backup - Continuous, resumable MySQL backup to S3.

This package combines weekly full snapshots with a live binlog tail:
- mysqldump full backups, uploaded under ISO-week keys
- A capture loop that writes binlog events into bounded segment files
- Background uploads of rotated segments and of the live buffer
- A weekly scheduler that replaces the capture session after each full backup

Architecture:
    ┌───────────┐  weekly   ┌─────────────┐  cursor  ┌──────────────┐
    │ Scheduler │──────────▶│ Full backup │─────────▶│ Cursor store │
    └─────┬─────┘           └──────┬──────┘          └──────┬───────┘
          │ replace session        │ dump                   │ resume
          ▼                        ▼                        ▼
    ┌─────────────┐  events  ┌──────────────┐  segments ┌──────────┐
    │ MySQL binlog│─────────▶│ Capture loop │──────────▶│ Uploader │──▶ S3
    └─────────────┘          └──────────────┘           └──────────┘

Invariants:
    - At most one capture session consumes the binlog at a time
    - Events reach segment files in binlog order
    - Segment boundaries align with binlog rotations
    - Uploads never block capture

How to change safely:
    - Keep remote key layout stable; restore depends on it
    - Keep segment file names parseable by upload.keys

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
