"""
Base protocol and types for change-log event sources.

This module defines the EventSource protocol that every binlog reader must
implement, along with the log coordinate and event types shared by the
capture engine.

Invariants:
    - LogPosition uniquely identifies a resumable point in the change-log
    - Offsets are monotonically non-decreasing within one log identity
    - Sources deliver events in log order to a single consumer

How to change safely:
    - Protocol changes require updating all implementations
    - Keep ChangeEvent opaque: the capture engine only needs raw bytes,
      the event kind and the header position
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable
import logging

logger = logging.getLogger(__name__)

DEFAULT_LOG_IDENTITY = "binlog.000001"


class SourceError(Exception):
    """Base exception for event source operations."""
    pass


class SourceConnectionError(SourceError):
    """Connection to the change-log source failed."""
    pass


class SourceClosedError(SourceError):
    """The source was closed and cannot deliver more events."""
    pass


class EventKind(Enum):
    """Kinds of change-log events the capture engine distinguishes."""

    DATA = "data"
    ROTATE = "rotate"


@dataclass(frozen=True)
class LogPosition:
    """Resumable coordinate in the change-log.

    Attributes:
        log_identity: Name of the upstream log file (e.g. "binlog.000001")
        offset: Byte offset within that log file
    """
    log_identity: str
    offset: int

    def __post_init__(self) -> None:
        if not self.log_identity or any(c.isspace() for c in self.log_identity):
            raise ValueError(f"Invalid log identity: {self.log_identity!r}")
        if self.offset < 0:
            raise ValueError(f"Offset must be non-negative, got {self.offset}")

    @classmethod
    def initial(cls) -> LogPosition:
        """Position used when nothing has been captured yet."""
        return cls(log_identity=DEFAULT_LOG_IDENTITY, offset=0)

    def to_line(self) -> str:
        """Serialize as the one-line metadata record."""
        return f"{self.log_identity} {self.offset}\n"

    @classmethod
    def from_line(cls, line: str) -> LogPosition:
        """Parse a metadata record line.

        Raises:
            ValueError: If the line is not "<log_identity> <offset>"
        """
        parts = line.split()
        if len(parts) != 2:
            raise ValueError(f"Expected '<log_identity> <offset>', got {line!r}")
        return cls(log_identity=parts[0], offset=int(parts[1]))

    def __str__(self) -> str:
        return f"{self.log_identity}:{self.offset}"


@dataclass(frozen=True)
class ChangeEvent:
    """A decoded unit from the change-log stream.

    Attributes:
        kind: DATA or ROTATE
        raw_bytes: The event exactly as it appears in the log
        position: Header position (end offset of the event in its log)
        next_log_identity: Log that follows a ROTATE event, None otherwise
    """
    kind: EventKind
    raw_bytes: bytes
    position: LogPosition
    next_log_identity: str | None = None

    def __post_init__(self) -> None:
        if self.kind == EventKind.ROTATE and not self.next_log_identity:
            raise ValueError("ROTATE events require next_log_identity")

    @classmethod
    def data(cls, raw_bytes: bytes, position: LogPosition) -> ChangeEvent:
        return cls(kind=EventKind.DATA, raw_bytes=raw_bytes, position=position)

    @classmethod
    def rotate(
        cls,
        next_log_identity: str,
        position: LogPosition,
        raw_bytes: bytes = b"",
    ) -> ChangeEvent:
        return cls(
            kind=EventKind.ROTATE,
            raw_bytes=raw_bytes,
            position=position,
            next_log_identity=next_log_identity,
        )

    @property
    def is_rotate(self) -> bool:
        return self.kind == EventKind.ROTATE

    def __str__(self) -> str:
        size = len(self.raw_bytes)
        return f"ChangeEvent(kind={self.kind.value}, pos={self.position}, size={size})"


@runtime_checkable
class EventSource(Protocol):
    """Protocol for change-log readers.

    Ordering contract:
        - next_event() returns events in log order
        - The first event returned follows the position given to start()

    Example:
        >>> source = InMemoryEventSource(events)
        >>> await source.start(LogPosition("binlog.000005", 1000))
        >>> event = await source.next_event()
    """

    @abstractmethod
    async def start(self, position: LogPosition) -> None:
        """Begin reading at the given coordinate.

        Raises:
            SourceConnectionError: If the source cannot be opened
        """
        ...

    @abstractmethod
    async def next_event(self) -> ChangeEvent:
        """Wait for and return the next event.

        Blocks until an event is available. Cancelling the awaiting task
        abandons the wait.

        Raises:
            SourceError: On transient read failures
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""
        ...
