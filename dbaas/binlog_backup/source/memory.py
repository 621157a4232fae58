"""
In-memory event source for testing.

This module provides a scripted change-log source for:
- Unit tests of the capture loop
- Integration tests of the scheduler
- Local development without a MySQL server

Invariants:
    - Events are delivered in the order they were pushed
    - Injected failures are raised before the next queued event

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with EventSource protocol
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Iterable, List, Optional

from .base import ChangeEvent, LogPosition, SourceClosedError, SourceError

logger = logging.getLogger(__name__)


class InMemoryEventSource:
    """Scripted implementation of EventSource.

    Events can be queued up front or pushed while a consumer is waiting.
    Every start() call is recorded so tests can assert where a capture
    loop asked to resume from.

    Example:
        >>> source = InMemoryEventSource()
        >>> source.push(ChangeEvent.data(b"abc", LogPosition("binlog.000001", 123)))
        >>> await source.start(LogPosition.initial())
        >>> event = await source.next_event()
    """

    def __init__(self, events: Optional[Iterable[ChangeEvent]] = None) -> None:
        self._events: Deque[ChangeEvent] = deque(events or [])
        self._failures: Deque[Exception] = deque()
        self._available = asyncio.Event()
        self._started = False
        self._closed = False
        self.start_positions: List[LogPosition] = []
        self.delivered_count = 0
        if self._events:
            self._available.set()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self, position: LogPosition) -> None:
        """Record the requested start position."""
        self.start_positions.append(position)
        self._started = True
        self._closed = False
        logger.debug("InMemoryEventSource started", extra={"position": str(position)})

    async def next_event(self) -> ChangeEvent:
        """Return the next queued event, waiting for one if necessary."""
        while True:
            if self._closed:
                raise SourceClosedError("Source closed")
            if self._failures:
                raise self._failures.popleft()
            if self._events:
                event = self._events.popleft()
                if not self._events:
                    self._available.clear()
                self.delivered_count += 1
                return event
            self._available.clear()
            await self._available.wait()

    async def close(self) -> None:
        self._closed = True
        self._available.set()
        logger.debug("InMemoryEventSource closed")

    # Testing helpers

    def push(self, *events: ChangeEvent) -> None:
        """Queue events and wake a waiting consumer."""
        self._events.extend(events)
        self._available.set()

    def inject_failure(self, exception: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next `times` pulls raise before delivering events."""
        for _ in range(times):
            self._failures.append(exception or SourceError("injected failure"))
        self._available.set()

    @property
    def pending_count(self) -> int:
        return len(self._events)

    async def wait_until_drained(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event was delivered (testing helper)."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if not self._events:
                return True
            await asyncio.sleep(0.01)
        return False
