"""
Incremental capture module.

This module turns an ordered binlog event stream into bounded local
segment files for:
- Incremental restore on top of the weekly full backup
- Resuming capture after a restart (persisted cursor)

Invariants:
    - One capture loop is live at a time, owned by one session
    - Segment boundaries align with upstream log rotations
    - Rotated segments are immutable
"""

from .loop import (
    BINLOG_START_OFFSET,
    CaptureError,
    CaptureLoop,
    CaptureState,
    RetryBudgetExceeded,
    RetryPolicy,
)
from .position import POSITION_FILE_NAME, PositionStore
from .segment import (
    BufferSnapshot,
    Segment,
    SegmentSequence,
    SegmentWriteError,
    SegmentWriter,
    segment_file_name,
)
from .session import CaptureSession

__all__ = [
    "CaptureLoop",
    "CaptureSession",
    "CaptureState",
    "CaptureError",
    "RetryBudgetExceeded",
    "RetryPolicy",
    "BINLOG_START_OFFSET",
    "PositionStore",
    "POSITION_FILE_NAME",
    "Segment",
    "SegmentSequence",
    "SegmentWriter",
    "SegmentWriteError",
    "BufferSnapshot",
    "segment_file_name",
]
