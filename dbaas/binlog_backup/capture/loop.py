"""
Capture loop for incremental binlog backup.

The CaptureLoop is the single consumer of one change-log stream. It:
1. Loads the persisted cursor and asks the source to start there
2. Appends DATA event bytes to the segment writer, in delivery order
3. Streams the unflushed buffer to the rolling remote object
4. Rotates segments on upstream ROTATE events and at the size cap
5. Hands rotated segments to the upload coordinator
6. Checkpoints the cursor once a rotated segment, and every segment
   rotated before it, is stored remotely

State machine:
    STARTING -> STREAMING -> (ROTATING -> STREAMING)* -> CANCELLED | FAILED

Invariants:
    - Events are applied in exactly the order the source delivers them
    - A ROTATE event always produces a new segment
    - Segment boundaries only occur at ROTATE events or the size cap
    - Cancellation stops the loop immediately; unflushed bytes may be lost
    - The cursor never moves past bytes that are not stored remotely, so a
      restart re-captures anything still local
    - A loop instance runs at most once

How to change safely:
    - Never await upload work from the event path
    - Test ordering with randomized DATA/ROTATE sequences
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..source.base import (
    ChangeEvent,
    EventSource,
    LogPosition,
    SourceClosedError,
)
from ..upload.coordinator import UploadCoordinator
from .position import PositionStore
from .segment import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_MAX_SEGMENT_SIZE,
    Segment,
    SegmentSequence,
    SegmentWriter,
)

logger = logging.getLogger(__name__)

# First event offset in a MySQL binlog file (after the magic header)
BINLOG_START_OFFSET = 4


class CaptureError(Exception):
    """Fatal error that ends a capture session."""

    pass


class RetryBudgetExceeded(CaptureError):
    """The event source kept failing past the retry budget."""

    pass


class CaptureState(Enum):
    """Lifecycle states of a capture loop."""

    STARTING = "starting"
    STREAMING = "streaming"
    ROTATING = "rotating"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for event source pulls.

    Attributes:
        max_retries: Consecutive failures tolerated before giving up
        base_delay: Delay after the first failure (seconds)
        max_delay: Upper bound for any single delay (seconds)
        jitter: Randomize each delay between 50% and 150%
    """

    max_retries: int = 10
    base_delay: float = 0.1
    max_delay: float = 30.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


@dataclass
class _PendingCheckpoint:
    segment_name: str
    position: LogPosition | None
    uploaded: bool = False


class CaptureLoop:
    """Consumes change events into rotating local segments.

    Attributes:
        source: Event source to read from
        backup_dir: Directory for segment files
        uploader: Upload coordinator for buffers and segments
        position_store: Cursor store to resume from and checkpoint into
        sequence: Segment counter shared with later sessions

    Example:
        >>> loop = CaptureLoop(source, backup_dir, uploader, PositionStore(backup_dir))
        >>> task = asyncio.create_task(loop.run())
        >>> task.cancel()
    """

    def __init__(
        self,
        source: EventSource,
        backup_dir: str | Path,
        uploader: UploadCoordinator,
        position_store: PositionStore,
        sequence: SegmentSequence | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        max_segment_size: int = DEFAULT_MAX_SEGMENT_SIZE,
        retry_policy: RetryPolicy | None = None,
        checkpoint: bool = True,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.backup_dir = Path(backup_dir)
        self.uploader = uploader
        self.position_store = position_store
        self.sequence = sequence or SegmentSequence()
        self.buffer_size = buffer_size
        self.max_segment_size = max_segment_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.checkpoint = checkpoint
        self.clock = clock
        self._sleep = sleep

        self.state = CaptureState.STARTING
        self.start_position: LogPosition | None = None
        self.writer: SegmentWriter | None = None
        self._started = False
        self._events_processed = 0
        self._rotations = 0
        self._pull_retries = 0
        self._pending_checkpoints: deque[_PendingCheckpoint] = deque()

    @property
    def log_identity(self) -> str | None:
        return self.writer.log_identity if self.writer else None

    async def run(self) -> None:
        """Run until cancelled or a fatal error occurs.

        Raises:
            CaptureError: If the source fails past the retry budget or a
                segment file cannot be created
        """
        if self._started:
            raise CaptureError("CaptureLoop instances cannot be restarted")
        self._started = True

        position = self.position_store.load()
        self.start_position = position
        self.writer = SegmentWriter(
            backup_dir=self.backup_dir,
            log_identity=position.log_identity,
            sequence=self.sequence,
            buffer_size=self.buffer_size,
            max_segment_size=self.max_segment_size,
            clock=self.clock,
        )

        logger.info(
            "Incremental backup started",
            extra={"log_identity": position.log_identity, "offset": position.offset},
        )

        try:
            await self.source.start(position)
            self.writer.open_segment()
            self.state = CaptureState.STREAMING

            while True:
                event = await self._next_event()
                self._process_event(event)

        except asyncio.CancelledError:
            self.state = CaptureState.CANCELLED
            logger.info("Incremental backup cancelled", extra=self.stats)
            raise
        except Exception as e:
            self.state = CaptureState.FAILED
            logger.error(f"Incremental backup failed: {e}", exc_info=True)
            if isinstance(e, CaptureError):
                raise
            raise CaptureError(str(e)) from e
        finally:
            self.writer.close()
            try:
                await self.source.close()
            except Exception as e:
                logger.warning(f"Error closing event source: {e}")

    async def _next_event(self) -> ChangeEvent:
        attempt = 0
        while True:
            try:
                return await self.source.next_event()
            except SourceClosedError as e:
                raise CaptureError(f"Event source closed: {e}") from e
            except Exception as e:
                attempt += 1
                self._pull_retries += 1
                if attempt > self.retry_policy.max_retries:
                    raise RetryBudgetExceeded(
                        f"Event source failed {attempt} times in a row: {e}"
                    ) from e
                delay = self.retry_policy.delay(attempt)
                logger.warning(
                    "Error getting binlog event, retrying",
                    extra={"attempt": attempt, "delay_seconds": round(delay, 3), "error": str(e)},
                )
                await self._sleep(delay)

    def _process_event(self, event: ChangeEvent) -> None:
        writer = self.writer

        if event.is_rotate:
            logger.info(
                "Received rotate event",
                extra={"from_log": writer.log_identity, "next_log": event.next_log_identity},
            )
            closed = self._rotate(next_log_identity=event.next_log_identity)
            self._hand_off(closed, LogPosition(event.next_log_identity, BINLOG_START_OFFSET))
            self._events_processed += 1
            return

        segment_name = writer.current_segment.name
        if writer.append(event.raw_bytes, event.position):
            # The rolling object gets the buffer as it was just before the flush
            flushed = writer.last_flush_snapshot()
            if flushed is not None:
                self.uploader.ship_buffer(flushed, segment_name)
        elif writer.buffered_bytes:
            self.uploader.ship_buffer(writer.buffer_snapshot(), segment_name)

        if writer.size_cap_reached:
            closed = self._rotate()
            self._hand_off(closed, closed.end_position)

        self._events_processed += 1
        logger.debug(
            "Processed binlog event",
            extra={"position": str(event.position), "size_bytes": len(event.raw_bytes)},
        )

    def _rotate(self, next_log_identity: str | None = None) -> Segment:
        self.state = CaptureState.ROTATING
        try:
            closed = self.writer.rotate(next_log_identity=next_log_identity)
        finally:
            self.state = CaptureState.STREAMING
        self._rotations += 1
        return closed

    def _hand_off(self, segment: Segment, resume_position: LogPosition | None) -> None:
        """Ship a rotated segment; its resume position is saved once it is stored."""
        pending = _PendingCheckpoint(segment.name, resume_position)
        self._pending_checkpoints.append(pending)

        if segment.size_bytes == 0:
            logger.debug("Skipping upload of empty segment", extra={"segment": segment.name})
            self._segment_stored(pending)
            return

        self.uploader.ship_segment_file(
            segment.path, on_uploaded=lambda _path: self._segment_stored(pending)
        )

    def _segment_stored(self, pending: _PendingCheckpoint) -> None:
        pending.uploaded = True
        if self.state in (CaptureState.CANCELLED, CaptureState.FAILED):
            # A later session owns the cursor now
            return

        position = None
        while self._pending_checkpoints and self._pending_checkpoints[0].uploaded:
            done = self._pending_checkpoints.popleft()
            if done.position is not None:
                position = done.position
        if position is not None:
            self._save_checkpoint(position)

    def _save_checkpoint(self, position: LogPosition) -> None:
        if not self.checkpoint:
            return
        try:
            self.position_store.save(position)
        except OSError as e:
            logger.error(f"Failed to checkpoint binlog position {position}: {e}")

    @property
    def stats(self) -> dict[str, Any]:
        """Get capture statistics."""
        return {
            "state": self.state.value,
            "log_identity": self.log_identity,
            "events_processed": self._events_processed,
            "rotations": self._rotations,
            "pull_retries": self._pull_retries,
            "pending_checkpoints": len(self._pending_checkpoints),
            "dropped_bytes": self.writer.dropped_bytes if self.writer else 0,
        }
