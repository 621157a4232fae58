"""
Unit tests for the segment writer.

Tests cover:
- Deterministic segment naming and sequence numbering
- Threshold flushing
- Rotation on demand and at the size cap
- Write failure handling
"""

from datetime import datetime

import pytest

from dbaas.binlog_backup.capture.segment import (
    Segment,
    SegmentSequence,
    SegmentWriteError,
    SegmentWriter,
    segment_file_name,
)
from dbaas.binlog_backup.source.base import LogPosition

FIXED_TIME = datetime(2024, 3, 4, 10, 15, 0)


def make_writer(tmp_path, **kwargs):
    defaults = dict(
        backup_dir=tmp_path,
        log_identity="binlog.000001",
        sequence=SegmentSequence(),
        buffer_size=8,
        max_segment_size=32,
        clock=lambda: FIXED_TIME,
    )
    defaults.update(kwargs)
    return SegmentWriter(**defaults)


class TestSegmentNaming:
    """Tests for segment file names and the sequence counter."""

    def test_file_name_format(self):
        """incr_backup_<log>_<seq>_<YYYYMMDD_HHMMSS>.log"""
        name = segment_file_name("binlog.000001", 7, FIXED_TIME)
        assert name == "incr_backup_binlog.000001_7_20240304_101500.log"

    def test_sequence_is_monotonic(self):
        seq = SegmentSequence()
        assert [seq.next() for _ in range(3)] == [0, 1, 2]
        assert seq.peek == 3

    def test_sequence_shared_across_writers(self, tmp_path):
        """A second writer continues the numbering of the first."""
        seq = SegmentSequence()
        first = make_writer(tmp_path, sequence=seq)
        first.open_segment()
        first.close()

        second = make_writer(tmp_path, sequence=seq)
        segment = second.open_segment()
        assert segment.sequence_number == 1


class TestSegmentWriter:
    """Tests for SegmentWriter buffering and rotation."""

    def test_open_segment_creates_file(self, tmp_path):
        writer = make_writer(tmp_path)
        segment = writer.open_segment()

        assert segment.path.exists()
        assert segment.sequence_number == 0
        assert segment.log_identity == "binlog.000001"
        assert writer.current_segment is segment

    def test_append_below_threshold_stays_buffered(self, tmp_path):
        writer = make_writer(tmp_path)
        segment = writer.open_segment()

        flushed = writer.append(b"abc")

        assert flushed is False
        assert writer.buffer == b"abc"
        assert segment.size_bytes == 0

    def test_append_at_threshold_flushes(self, tmp_path):
        """Reaching the buffer threshold writes and clears the buffer."""
        writer = make_writer(tmp_path)
        segment = writer.open_segment()

        writer.append(b"abcd")
        flushed = writer.append(b"efgh", LogPosition("binlog.000001", 500))

        assert flushed is True
        assert writer.buffered_bytes == 0
        assert segment.size_bytes == 8
        assert segment.end_position == LogPosition("binlog.000001", 500)
        assert segment.path.read_bytes() == b"abcdefgh"

    def test_buffer_snapshot_is_stable_after_flush(self, tmp_path):
        """A snapshot taken before a flush keeps its bytes."""
        writer = make_writer(tmp_path)
        writer.open_segment()

        writer.append(b"abc")
        snapshot = writer.buffer_snapshot()
        writer.append(b"defgh")  # flushes

        assert bytes(snapshot) == b"abc"
        assert len(snapshot) == 3

    def test_buffer_snapshot_ignores_later_appends(self, tmp_path):
        writer = make_writer(tmp_path)
        writer.open_segment()

        writer.append(b"ab")
        snapshot = writer.buffer_snapshot()
        writer.append(b"cd")

        assert bytes(snapshot) == b"ab"
        assert writer.buffer == b"abcd"

    def test_rotate_flushes_and_opens_new_segment(self, tmp_path):
        rotated = []
        writer = make_writer(tmp_path, on_rotated=rotated.append)
        first = writer.open_segment()
        writer.append(b"xyz")

        closed = writer.rotate()

        assert closed is first
        assert closed.closed
        assert closed.path.read_bytes() == b"xyz"
        assert rotated == [first]
        assert writer.current_segment.sequence_number == 1
        assert writer.buffered_bytes == 0

    def test_rotate_with_next_log_identity(self, tmp_path):
        """The new segment is named after the next upstream log."""
        writer = make_writer(tmp_path)
        writer.open_segment()

        writer.rotate(next_log_identity="binlog.000002")

        assert writer.log_identity == "binlog.000002"
        assert writer.current_segment.log_identity == "binlog.000002"
        assert "binlog.000002" in writer.current_segment.name

    def test_rotate_empty_segment(self, tmp_path):
        """Rotation happens even with nothing written."""
        writer = make_writer(tmp_path)
        writer.open_segment()

        closed = writer.rotate()

        assert closed.size_bytes == 0
        assert len(writer.closed_segments) == 1

    def test_size_cap_reached(self, tmp_path):
        writer = make_writer(tmp_path, buffer_size=8, max_segment_size=16)
        writer.open_segment()

        writer.append(b"x" * 8)
        assert not writer.size_cap_reached
        writer.append(b"y" * 8)
        assert writer.size_cap_reached

    def test_rotate_without_open_segment_raises(self, tmp_path):
        writer = make_writer(tmp_path)
        with pytest.raises(SegmentWriteError):
            writer.rotate()

    def test_open_segment_failure_raises(self, tmp_path):
        """An uncreatable segment file is a SegmentWriteError."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        writer = make_writer(blocker)
        with pytest.raises(SegmentWriteError):
            writer.open_segment()

    def test_write_failure_drops_bytes(self, tmp_path):
        """A failed write is logged and the bytes are not retried."""

        class BrokenFile:
            def write(self, data):
                raise OSError("disk full")

            def flush(self):
                pass

        writer = make_writer(tmp_path)
        writer.open_segment()
        real_file = writer._file
        writer._file = BrokenFile()

        writer.append(b"12345678")

        assert writer.dropped_bytes == 8
        assert writer.buffered_bytes == 0
        assert writer.current_segment.size_bytes == 0
        real_file.close()

    def test_close_does_not_flush(self, tmp_path):
        """Buffered bytes are lost on close."""
        writer = make_writer(tmp_path)
        segment = writer.open_segment()
        writer.append(b"abc")

        closed = writer.close()

        assert isinstance(closed, Segment)
        assert closed.closed
        assert segment.path.read_bytes() == b""
        assert writer.current_segment is None

    def test_invalid_sizes_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            make_writer(tmp_path, buffer_size=0)
