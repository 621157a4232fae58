"""
Segment writer for the binlog capture engine.

A segment is a bounded local file holding a contiguous slice of raw
binlog bytes. The writer buffers appended bytes in memory, flushes the
buffer to the open segment once it reaches the buffer threshold, and
rotates to a new segment when the size cap is reached or the upstream
log rotates.

Segment file name:
    incr_backup_<log_identity>_<sequence>_<YYYYMMDD_HHMMSS>.log

Invariants:
    - Bytes reach segment files in exactly the order they were appended
    - A segment is never written to after rotation
    - Sequence numbers never repeat within a process, across sessions
    - A failed write drops the buffered bytes and is logged with the
      segment name and binlog position; it is not retried

How to change safely:
    - The file name is parsed by upload.keys; change both together
    - Keep all mutable state on the writer instance (one per session)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable

from ..source.base import LogPosition

logger = logging.getLogger(__name__)

SEGMENT_PREFIX = "incr_backup"
SEGMENT_SUFFIX = ".log"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

DEFAULT_BUFFER_SIZE = 2 * 1024 * 1024
DEFAULT_MAX_SEGMENT_SIZE = 10 * 1024 * 1024


class SegmentWriteError(Exception):
    """A segment file could not be created or is not open."""

    pass


def segment_file_name(log_identity: str, sequence_number: int, created_at: datetime) -> str:
    """Build the deterministic segment file name."""
    return (
        f"{SEGMENT_PREFIX}_{log_identity}_{sequence_number}_"
        f"{created_at.strftime(TIMESTAMP_FORMAT)}{SEGMENT_SUFFIX}"
    )


@dataclass
class Segment:
    """A local segment file.

    Attributes:
        log_identity: Upstream log the segment's bytes came from
        sequence_number: Process-wide rotation counter
        path: Local file path
        size_bytes: Bytes flushed to the file so far
        created_at: Creation time (also embedded in the file name)
        end_position: Binlog coordinate the flushed content ends at
        closed: Whether the segment file has been closed
    """

    log_identity: str
    sequence_number: int
    path: Path
    created_at: datetime
    size_bytes: int = 0
    end_position: LogPosition | None = None
    closed: bool = False

    @property
    def name(self) -> str:
        return self.path.name


class SegmentSequence:
    """Monotonic segment counter shared by successive capture sessions.

    Only one session is live at a time, so the counter is handed from
    session to session rather than guarded.
    """

    def __init__(self, start: int = 0) -> None:
        self._next = start

    def next(self) -> int:
        value = self._next
        self._next += 1
        return value

    @property
    def peek(self) -> int:
        return self._next


class BufferSnapshot:
    """Read-only view of the unflushed buffer at one point in time.

    The writer only ever grows a buffer or replaces it on flush, so the
    first `length` bytes of `data` never change once captured.
    """

    __slots__ = ("_data", "_length")

    def __init__(self, data: bytearray, length: int) -> None:
        self._data = data
        self._length = length

    def __len__(self) -> int:
        return self._length

    def __bytes__(self) -> bytes:
        return bytes(self._data[: self._length])


@dataclass
class _Buffer:
    data: bytearray = field(default_factory=bytearray)
    last_position: LogPosition | None = None


class SegmentWriter:
    """Buffers change-log bytes and manages segment rotation.

    Attributes:
        backup_dir: Directory segment files are created in
        log_identity: Upstream log currently being captured
        buffer_size: Flush threshold for the in-memory buffer
        max_segment_size: Size cap that triggers rotation

    Example:
        >>> writer = SegmentWriter(backup_dir, "binlog.000001", SegmentSequence())
        >>> writer.open_segment()
        >>> writer.append(raw_bytes, position)
        >>> rotated = writer.rotate()
    """

    def __init__(
        self,
        backup_dir: str | Path,
        log_identity: str,
        sequence: SegmentSequence,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        max_segment_size: int = DEFAULT_MAX_SEGMENT_SIZE,
        on_rotated: Callable[[Segment], None] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if buffer_size <= 0 or max_segment_size <= 0:
            raise ValueError("buffer_size and max_segment_size must be positive")

        self.backup_dir = Path(backup_dir)
        self.log_identity = log_identity
        self.sequence = sequence
        self.buffer_size = buffer_size
        self.max_segment_size = max_segment_size
        self.on_rotated = on_rotated
        self.clock = clock

        self._buffer = _Buffer()
        self._segment: Segment | None = None
        self._file: BinaryIO | None = None
        self._closed: list[Segment] = []
        self._dropped_bytes = 0
        self._last_flush: BufferSnapshot | None = None

    @property
    def current_segment(self) -> Segment | None:
        return self._segment

    @property
    def buffer(self) -> bytes:
        """Snapshot of the bytes appended since the last flush."""
        return bytes(self._buffer.data)

    def buffer_snapshot(self) -> BufferSnapshot:
        return BufferSnapshot(self._buffer.data, len(self._buffer.data))

    def last_flush_snapshot(self) -> BufferSnapshot | None:
        """The bytes written by the most recent successful flush."""
        return self._last_flush

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer.data)

    @property
    def closed_segments(self) -> list[Segment]:
        return list(self._closed)

    @property
    def dropped_bytes(self) -> int:
        return self._dropped_bytes

    @property
    def size_cap_reached(self) -> bool:
        return self._segment is not None and self._segment.size_bytes >= self.max_segment_size

    def open_segment(self) -> Segment:
        """Create the next segment file and make it current.

        Raises:
            SegmentWriteError: If the file cannot be created
        """
        created_at = self.clock()
        sequence_number = self.sequence.next()
        path = self.backup_dir / segment_file_name(self.log_identity, sequence_number, created_at)

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            self._file = open(path, "wb")
        except OSError as e:
            raise SegmentWriteError(f"Cannot create segment file {path}: {e}") from e

        self._segment = Segment(
            log_identity=self.log_identity,
            sequence_number=sequence_number,
            path=path,
            created_at=created_at,
        )
        logger.info("Rotating to new segment", extra={"segment": path.name})
        return self._segment

    def append(self, data: bytes, position: LogPosition | None = None) -> bool:
        """Buffer bytes, flushing once the buffer threshold is reached.

        Args:
            data: Raw change-log bytes
            position: Binlog coordinate the bytes end at

        Returns:
            True if the buffer was flushed to the segment file
        """
        self._buffer.data.extend(data)
        if position is not None:
            self._buffer.last_position = position

        if len(self._buffer.data) >= self.buffer_size:
            return self.flush()
        return False

    def flush(self) -> bool:
        """Write buffered bytes to the open segment and clear the buffer.

        Returns:
            True if bytes were written, False if the buffer was empty or
            the write failed (in which case the bytes are dropped)
        """
        if not self._buffer.data:
            return False

        if self._segment is None or self._file is None:
            raise SegmentWriteError("No open segment to flush into")

        data = self._buffer.data
        position = self._buffer.last_position
        self._buffer = _Buffer()

        try:
            self._file.write(data)
            self._file.flush()
        except OSError as e:
            self._dropped_bytes += len(data)
            logger.error(
                "Failed writing to segment file, bytes dropped",
                extra={
                    "segment": self._segment.name,
                    "position": str(position) if position else None,
                    "dropped_bytes": len(data),
                    "error": str(e),
                },
            )
            return False

        self._segment.size_bytes += len(data)
        self._last_flush = BufferSnapshot(data, len(data))

        if position is not None:
            self._segment.end_position = position
        return True

    def rotate(self, next_log_identity: str | None = None) -> Segment:
        """Close the current segment, hand it off, and open a new one.

        Args:
            next_log_identity: Upstream log the new segment belongs to,
                when rotation follows an upstream log rotation

        Returns:
            The closed segment

        Raises:
            SegmentWriteError: If the new segment cannot be created
        """
        if self._segment is None:
            raise SegmentWriteError("No open segment to rotate")

        self.flush()
        closed = self._close_current()

        if next_log_identity:
            self.log_identity = next_log_identity

        if self.on_rotated is not None:
            self.on_rotated(closed)

        self.open_segment()
        return closed

    def close(self) -> Segment | None:
        """Close the current segment without flushing or handing it off."""
        if self._segment is None:
            return None
        segment = self._close_current()
        self._segment = None
        return segment

    def _close_current(self) -> Segment:
        segment = self._segment
        if self._file is not None:
            try:
                os.fsync(self._file.fileno())
            except OSError as e:
                logger.warning(f"fsync failed for segment {segment.name}: {e}")
            finally:
                self._file.close()
                self._file = None

        segment.closed = True
        self._closed.append(segment)
        return segment
