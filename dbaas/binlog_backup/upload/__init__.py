"""
Upload module for backup artifacts.

This module ships full backups, rotated binlog segments and the live
streaming buffer to S3-compatible object storage for:
- Durability beyond the local backup directory
- Point-in-time restore (full backup + segments)

Invariants:
    - Keys are partitioned by ISO year and week
    - Uploads never block binlog capture
"""

from .coordinator import UploadCoordinator
from .keys import (
    KeyDerivationError,
    full_backup_file_name,
    full_backup_key,
    parse_segment_name,
    segment_key,
    storage_key,
    stream_key,
)
from .store import InMemoryObjectStore, ObjectStore, ObjectStoreError, S3ObjectStore

__all__ = [
    "UploadCoordinator",
    "ObjectStore",
    "ObjectStoreError",
    "S3ObjectStore",
    "InMemoryObjectStore",
    "KeyDerivationError",
    "full_backup_file_name",
    "full_backup_key",
    "parse_segment_name",
    "segment_key",
    "storage_key",
    "stream_key",
]
