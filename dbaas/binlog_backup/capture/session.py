"""
Capture session handle.

A CaptureSession owns exactly one CaptureLoop running in its own task.
The scheduler keeps a single session reference and replaces it by calling
cancel_and_wait() on the old session before starting a new one, so two
loops never touch segment state at the same time.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

from .loop import CaptureError, CaptureLoop, CaptureState

logger = logging.getLogger(__name__)

_session_ids = itertools.count(1)


class CaptureSession:
    """Cancellable lifetime of one capture loop.

    Example:
        >>> session = CaptureSession(loop)
        >>> session.start()
        >>> await session.cancel_and_wait()
    """

    def __init__(self, loop: CaptureLoop) -> None:
        self.loop = loop
        self.session_id = next(_session_ids)
        self._task: asyncio.Task | None = None
        self.error: BaseException | None = None

    @property
    def state(self) -> CaptureState:
        return self.loop.state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> asyncio.Task:
        """Spawn the capture task."""
        if self._task is not None:
            raise RuntimeError(f"Capture session {self.session_id} already started")
        self._task = asyncio.create_task(self._run(), name=f"capture-session-{self.session_id}")
        logger.info("Capture session started", extra={"session_id": self.session_id})
        return self._task

    async def _run(self) -> None:
        try:
            await self.loop.run()
        except CaptureError as e:
            self.error = e
            logger.error(
                "Capture session ended with error",
                extra={"session_id": self.session_id, "error": str(e)},
            )

    async def cancel_and_wait(self, timeout: float | None = None) -> None:
        """Cancel the capture task and wait until it has stopped.

        Args:
            timeout: Maximum seconds to wait for the loop to unwind
        """
        if self._task is None:
            return

        if not self._task.done():
            self._task.cancel()

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.CancelledError:
            if not self._task.done():
                raise
        except asyncio.TimeoutError:
            logger.warning(
                "Capture session did not stop in time",
                extra={"session_id": self.session_id, "timeout": timeout},
            )
            return

        logger.info(
            "Capture session stopped",
            extra={"session_id": self.session_id, "state": self.state.value},
        )

    async def wait(self) -> None:
        """Wait for the session to end.

        Cancelling the waiter does not cancel the session.
        """
        if self._task is not None:
            await asyncio.wait({self._task})

    @property
    def stats(self) -> dict[str, Any]:
        return {"session_id": self.session_id, **self.loop.stats}
