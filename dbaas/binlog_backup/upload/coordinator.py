"""
Upload coordinator for the capture engine.

Ships two kinds of artifacts to object storage without ever blocking the
capture loop:

- The live streaming buffer of the current segment, written to a single
  rolling object per ISO week (best-effort tailing only)
- Rotated segment files, one object per segment (authoritative)

Invariants:
    - ship_* calls return immediately; work happens in background tasks
    - Upload failures are logged, never retried and never raised to callers
    - Streaming uploads are coalesced per key: at most one in flight, and
      only the newest pending buffer is sent next
    - Segment uploads run concurrently with no ordering between them
    - Segment files are only read, never modified
    - A segment's on_uploaded callback runs only after its put succeeded

How to change safely:
    - Keep the capture loop free of awaits on upload work
    - Test with a failing store to verify failures stay contained
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable

from .keys import KeyDerivationError, segment_key, stream_key
from .store import ObjectStore

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_TIMEOUT_SECONDS = 300.0


class UploadCoordinator:
    """Background uploader for streaming buffers and rotated segments.

    Attributes:
        store: Object store to upload into
        retain_local_segments: Keep segment files after a successful upload
        upload_timeout: Per-upload timeout in seconds

    Example:
        >>> coordinator = UploadCoordinator(store)
        >>> coordinator.ship_segment_file(segment.path)
        >>> await coordinator.drain()
    """

    def __init__(
        self,
        store: ObjectStore,
        retain_local_segments: bool = True,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.retain_local_segments = retain_local_segments
        self.upload_timeout = upload_timeout

        self._tasks: set[asyncio.Task] = set()
        self._stream_pending: dict[str, Any] = {}
        self._stream_workers: dict[str, asyncio.Task] = {}
        self._uploaded_segments = 0
        self._uploaded_buffers = 0
        self._failed_uploads = 0

    def ship_buffer(self, data: Any, segment_name: str) -> None:
        """Queue the cumulative buffer of a segment for the rolling object.

        Args:
            data: Bytes (or a BufferSnapshot) holding every byte appended to
                the segment since its last flush
            segment_name: File name of the segment currently being written
        """
        try:
            key = stream_key(segment_name)
        except KeyDerivationError as e:
            logger.error(f"Failed to get stream key for {segment_name}: {e}")
            return

        self._stream_pending[key] = data
        if key not in self._stream_workers:
            worker = self._spawn(self._stream_worker(key))
            self._stream_workers[key] = worker

    def ship_segment_file(
        self,
        path: str | Path,
        on_uploaded: Callable[[Path], None] | None = None,
    ) -> None:
        """Queue a rotated segment file for upload.

        Args:
            path: Closed segment file
            on_uploaded: Called with the path once the object is stored;
                never called when the upload fails or is cancelled
        """
        self._spawn(self._upload_segment(Path(path), on_uploaded))

    async def drain(self) -> None:
        """Wait for every queued and in-flight upload to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Abandon in-flight uploads."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._stream_pending.clear()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "in_flight": len(self._tasks),
            "uploaded_segments": self._uploaded_segments,
            "uploaded_buffers": self._uploaded_buffers,
            "failed_uploads": self._failed_uploads,
        }

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _stream_worker(self, key: str) -> None:
        try:
            while key in self._stream_pending:
                data = bytes(self._stream_pending.pop(key))
                try:
                    await asyncio.wait_for(self.store.put(key, data), timeout=self.upload_timeout)
                    self._uploaded_buffers += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._failed_uploads += 1
                    logger.error(
                        "Failed to stream binlog buffer",
                        extra={"key": key, "size_bytes": len(data), "error": str(e)},
                    )
        finally:
            self._stream_workers.pop(key, None)

    async def _upload_segment(
        self, path: Path, on_uploaded: Callable[[Path], None] | None = None
    ) -> None:
        try:
            key = segment_key(path.name)
        except KeyDerivationError as e:
            self._failed_uploads += 1
            logger.error(f"Failed to get storage key for segment {path.name}: {e}")
            return

        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, path.read_bytes)
        except OSError as e:
            self._failed_uploads += 1
            logger.error(f"Error reading segment file {path}: {e}")
            return

        try:
            await asyncio.wait_for(self.store.put(key, data), timeout=self.upload_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed_uploads += 1
            logger.error(
                "Failed to upload segment",
                extra={"segment": path.name, "key": key, "error": str(e)},
            )
            return

        self._uploaded_segments += 1
        logger.info(
            "Uploaded segment",
            extra={"segment": path.name, "key": key, "size_bytes": len(data)},
        )

        if on_uploaded is not None:
            try:
                on_uploaded(path)
            except Exception as e:
                logger.error(f"Segment upload callback failed for {path.name}: {e}", exc_info=True)

        if not self.retain_local_segments:
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove uploaded segment {path}: {e}")
