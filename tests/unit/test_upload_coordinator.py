"""
Unit tests for the upload coordinator.

Tests cover:
- Segment uploads under ISO-week keys
- Coalescing of streaming buffer uploads
- Failure containment
- Local retention policy
"""

import asyncio

import pytest

from dbaas.binlog_backup.capture.segment import BufferSnapshot
from dbaas.binlog_backup.upload.coordinator import UploadCoordinator
from dbaas.binlog_backup.upload.store import InMemoryObjectStore

SEGMENT_NAME = "incr_backup_binlog.000001_3_20240304_101500.log"
SEGMENT_KEY = f"2024/10/Monday/{SEGMENT_NAME}"
STREAM_KEY = "2024/10/weekly-binlog.log"


class BlockingStore(InMemoryObjectStore):
    """Object store whose puts wait for a release signal."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.started = 0

    async def put(self, key, data):
        self.started += 1
        await self.release.wait()
        await super().put(key, data)


class TestUploadCoordinator:
    """Tests for UploadCoordinator."""

    @pytest.fixture
    def store(self):
        return InMemoryObjectStore()

    @pytest.fixture
    def segment_file(self, tmp_path):
        path = tmp_path / SEGMENT_NAME
        path.write_bytes(b"segment-bytes")
        return path

    @pytest.mark.asyncio
    async def test_ship_segment_file(self, store, segment_file):
        """A rotated segment is uploaded under its weekday key."""
        coordinator = UploadCoordinator(store)

        coordinator.ship_segment_file(segment_file)
        await coordinator.drain()

        assert store.objects[SEGMENT_KEY] == b"segment-bytes"
        assert coordinator.stats["uploaded_segments"] == 1
        assert segment_file.exists()

    @pytest.mark.asyncio
    async def test_ship_returns_immediately(self, segment_file):
        """Shipping never waits for the upload."""
        store = BlockingStore()
        coordinator = UploadCoordinator(store)

        coordinator.ship_segment_file(segment_file)
        assert coordinator.in_flight == 1

        store.release.set()
        await coordinator.drain()
        assert coordinator.in_flight == 0

    @pytest.mark.asyncio
    async def test_segment_removed_when_not_retained(self, store, segment_file):
        coordinator = UploadCoordinator(store, retain_local_segments=False)

        coordinator.ship_segment_file(segment_file)
        await coordinator.drain()

        assert SEGMENT_KEY in store.objects
        assert not segment_file.exists()

    @pytest.mark.asyncio
    async def test_failed_segment_upload_is_contained(self, store, segment_file):
        """Failures are counted and logged, never raised, and the file stays."""
        store.fail_on(SEGMENT_KEY)
        coordinator = UploadCoordinator(store, retain_local_segments=False)

        coordinator.ship_segment_file(segment_file)
        await coordinator.drain()

        assert SEGMENT_KEY not in store.objects
        assert coordinator.stats["failed_uploads"] == 1
        assert segment_file.exists()

    @pytest.mark.asyncio
    async def test_on_uploaded_called_after_put(self, segment_file):
        store = BlockingStore()
        coordinator = UploadCoordinator(store)
        uploaded = []

        coordinator.ship_segment_file(segment_file, on_uploaded=uploaded.append)
        await asyncio.sleep(0.01)
        assert uploaded == []

        store.release.set()
        await coordinator.drain()
        assert uploaded == [segment_file]
        assert SEGMENT_KEY in store.objects

    @pytest.mark.asyncio
    async def test_on_uploaded_not_called_on_failure(self, store, segment_file):
        store.fail_on(SEGMENT_KEY)
        coordinator = UploadCoordinator(store)
        uploaded = []

        coordinator.ship_segment_file(segment_file, on_uploaded=uploaded.append)
        await coordinator.drain()

        assert uploaded == []

    @pytest.mark.asyncio
    async def test_on_uploaded_error_is_contained(self, store, segment_file):
        def broken(path):
            raise RuntimeError("callback exploded")

        coordinator = UploadCoordinator(store, retain_local_segments=False)

        coordinator.ship_segment_file(segment_file, on_uploaded=broken)
        await coordinator.drain()

        assert SEGMENT_KEY in store.objects
        assert not segment_file.exists()

    @pytest.mark.asyncio
    async def test_missing_segment_file(self, store, tmp_path):
        coordinator = UploadCoordinator(store)

        coordinator.ship_segment_file(tmp_path / SEGMENT_NAME)
        await coordinator.drain()

        assert coordinator.stats["failed_uploads"] == 1

    @pytest.mark.asyncio
    async def test_unparseable_segment_name(self, store, tmp_path):
        path = tmp_path / "something_else.log"
        path.write_bytes(b"x")
        coordinator = UploadCoordinator(store)

        coordinator.ship_segment_file(path)
        await coordinator.drain()

        assert store.objects == {}
        assert coordinator.stats["failed_uploads"] == 1

    @pytest.mark.asyncio
    async def test_ship_buffer_uses_stream_key(self, store):
        coordinator = UploadCoordinator(store)

        coordinator.ship_buffer(b"abc", SEGMENT_NAME)
        await coordinator.drain()

        assert store.objects == {STREAM_KEY: b"abc"}

    @pytest.mark.asyncio
    async def test_ship_buffer_accepts_snapshot(self, store):
        coordinator = UploadCoordinator(store)

        coordinator.ship_buffer(BufferSnapshot(bytearray(b"abcdef"), 4), SEGMENT_NAME)
        await coordinator.drain()

        assert store.objects[STREAM_KEY] == b"abcd"

    @pytest.mark.asyncio
    async def test_buffer_uploads_coalesce(self, store):
        """Only the newest pending buffer is sent."""
        coordinator = UploadCoordinator(store)

        coordinator.ship_buffer(b"a", SEGMENT_NAME)
        coordinator.ship_buffer(b"ab", SEGMENT_NAME)
        coordinator.ship_buffer(b"abc", SEGMENT_NAME)
        await coordinator.drain()

        assert store.put_log == [STREAM_KEY]
        assert store.objects[STREAM_KEY] == b"abc"

    @pytest.mark.asyncio
    async def test_buffer_sent_after_in_flight_upload(self):
        """A buffer queued during an upload follows it, superseding older ones."""
        store = BlockingStore()
        coordinator = UploadCoordinator(store)

        coordinator.ship_buffer(b"a", SEGMENT_NAME)
        await asyncio.sleep(0.01)
        assert store.started == 1

        coordinator.ship_buffer(b"ab", SEGMENT_NAME)
        coordinator.ship_buffer(b"abc", SEGMENT_NAME)
        store.release.set()
        await coordinator.drain()

        assert store.put_log == [STREAM_KEY, STREAM_KEY]
        assert store.objects[STREAM_KEY] == b"abc"

    @pytest.mark.asyncio
    async def test_failed_buffer_upload_is_contained(self, store):
        store.fail_on(STREAM_KEY)
        coordinator = UploadCoordinator(store)

        coordinator.ship_buffer(b"abc", SEGMENT_NAME)
        await coordinator.drain()

        assert coordinator.stats["failed_uploads"] == 1

    @pytest.mark.asyncio
    async def test_cancel_all(self, segment_file):
        """In-flight uploads can be abandoned."""
        store = BlockingStore()
        coordinator = UploadCoordinator(store)

        coordinator.ship_segment_file(segment_file)
        coordinator.ship_buffer(b"abc", SEGMENT_NAME)
        await asyncio.sleep(0.01)

        await coordinator.cancel_all()

        assert coordinator.in_flight == 0
        assert store.objects == {}

    @pytest.mark.asyncio
    async def test_upload_timeout(self, segment_file):
        """A hung upload times out and counts as a failure."""
        store = BlockingStore()
        coordinator = UploadCoordinator(store, upload_timeout=0.05)

        coordinator.ship_segment_file(segment_file)
        await coordinator.drain()

        assert coordinator.stats["failed_uploads"] == 1
