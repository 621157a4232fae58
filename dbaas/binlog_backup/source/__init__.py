"""
Change-log event sources for the capture engine.

This module provides a pluggable reader interface supporting:
- MySQL binlog replication (production)
- In-memory scripted events (testing)

Invariants:
    - Events are delivered in log order to a single consumer
    - Every event carries the coordinate it ends at

How to change safely:
    - New sources must implement the EventSource protocol
    - Verify resume semantics against a real server
"""

from typing import Any

from .base import (
    DEFAULT_LOG_IDENTITY,
    ChangeEvent,
    EventKind,
    EventSource,
    LogPosition,
    SourceClosedError,
    SourceConnectionError,
    SourceError,
)
from .memory import InMemoryEventSource
from .mysql import MySQLEventSource


def create_event_source(config: Any) -> EventSource:
    """Factory used by the scheduler to build one source per capture session.

    Args:
        config: AppConfig instance

    Returns:
        A fresh, not yet started EventSource
    """
    return MySQLEventSource(config.mysql)


__all__ = [
    # Protocol and types
    "EventSource",
    "ChangeEvent",
    "EventKind",
    "LogPosition",
    "DEFAULT_LOG_IDENTITY",
    "SourceError",
    "SourceConnectionError",
    "SourceClosedError",
    # Factory
    "create_event_source",
    # Implementations
    "MySQLEventSource",
    "InMemoryEventSource",
]
