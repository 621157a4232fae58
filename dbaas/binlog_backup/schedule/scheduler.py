"""
Weekly backup scheduler.

The BackupScheduler drives the backup chain:
1. Waits until the next weekday/time fire point
2. Runs the full backup to completion (this records the new cursor)
3. Cancels the previous capture session and waits for it to stop
4. Starts a fresh capture session from the new cursor
5. Re-arms on a fixed 7-day period

Invariants:
    - The scheduler holds the only reference to the live capture session
    - At most one capture session consumes events at any time; the old one
      has fully stopped before the new one starts
    - A failed full backup is logged and does not stop the schedule; the
      capture session is restarted regardless
    - Re-arming is plain period arithmetic from the first fire time; it does
      not re-align to daylight-saving shifts
    - A session that ends with an error is replaced from the persisted
      cursor after a bounded, doubling delay; capture never stays off until
      the next fire

How to change safely:
    - Keep session replacement inside fire() so exclusivity stays local
    - Test with an injected clock and sleep, never with real timers
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..capture.session import CaptureSession
from .spec import ScheduleSpec, next_fire_time

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)
DEFAULT_STOP_TIMEOUT_SECONDS = 30.0
DEFAULT_RESTART_DELAY_SECONDS = 5.0
DEFAULT_MAX_RESTART_DELAY_SECONDS = 300.0


class BackupScheduler:
    """Fires full backups weekly and keeps one capture session running.

    Attributes:
        full_backup: Coroutine function running one full backup
        session_factory: Builds a new, not yet started CaptureSession
        period: Interval between fires after the first one
        restart_delay: Wait before replacing a failed session, doubled
            after each consecutive failure up to max_restart_delay

    Example:
        >>> scheduler = BackupScheduler(executor.run_full_backup, make_session)
        >>> await scheduler.enable(ScheduleSpec.parse("Mon", "00:00"))
    """

    def __init__(
        self,
        full_backup: Callable[[], Awaitable[Any]],
        session_factory: Callable[[], CaptureSession],
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        period: timedelta = WEEK,
        stop_timeout: float | None = DEFAULT_STOP_TIMEOUT_SECONDS,
        restart_delay: float = DEFAULT_RESTART_DELAY_SECONDS,
        max_restart_delay: float = DEFAULT_MAX_RESTART_DELAY_SECONDS,
    ) -> None:
        self.full_backup = full_backup
        self.session_factory = session_factory
        self.clock = clock
        self._sleep = sleep
        self.period = period
        self.stop_timeout = stop_timeout
        self.restart_delay = restart_delay
        self.max_restart_delay = max_restart_delay

        self._running = False
        self._session: CaptureSession | None = None
        self._supervisor: asyncio.Task | None = None
        self._stopping = False
        self._session_restarts = 0
        self._next_fire_at: datetime | None = None
        self._fires = 0
        self._failed_backups = 0

    @property
    def current_session(self) -> CaptureSession | None:
        return self._session

    @property
    def next_fire_at(self) -> datetime | None:
        return self._next_fire_at

    async def enable(self, spec: ScheduleSpec) -> None:
        """Run the weekly schedule until stopped or cancelled."""
        if self._running:
            logger.warning("Backup scheduler already running")
            return

        self._running = True
        fire_at = next_fire_time(spec, self.clock())
        logger.info(
            "Backup scheduler enabled",
            extra={"schedule": str(spec), "first_fire_at": fire_at.isoformat()},
        )

        try:
            while self._running:
                self._next_fire_at = fire_at
                delay = (fire_at - self.clock()).total_seconds()
                await self._sleep(max(delay, 0.0))
                if not self._running:
                    break
                logger.info("Timer expired, running scheduled backup")
                await self.fire()
                fire_at = fire_at + self.period

        except asyncio.CancelledError:
            logger.info("Backup scheduler cancelled")
        finally:
            self._running = False

    async def fire(self) -> CaptureSession:
        """Run one full backup, then replace the capture session.

        Returns:
            The newly started capture session
        """
        self._fires += 1
        started_at = self.clock()
        logger.info("Full backup started", extra={"started_at": started_at.isoformat()})

        try:
            await self.full_backup()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed_backups += 1
            logger.error(f"Error during full backup: {e}", exc_info=True)

        await self._replace_session()
        return self._session

    async def stop(self) -> None:
        """Stop re-arming and cancel the live capture session."""
        self._running = False
        self._stopping = True
        logger.info("Stopping backup scheduler")
        await self._stop_supervisor()
        if self._session is not None:
            await self._session.cancel_and_wait(timeout=self.stop_timeout)

    async def _replace_session(self) -> None:
        await self._stop_supervisor()
        previous = self._session
        if previous is not None:
            await previous.cancel_and_wait(timeout=self.stop_timeout)
            if previous.running:
                logger.error(
                    "Previous capture session still running, not starting a new one",
                    extra={"session_id": previous.session_id},
                )
                return

        session = self._start_session()
        self._supervisor = asyncio.create_task(
            self._supervise(session), name=f"capture-supervisor-{session.session_id}"
        )
        logger.info(
            "Incremental backup session started",
            extra={
                "session_id": session.session_id,
                "previous_session_id": previous.session_id if previous else None,
            },
        )

    def _start_session(self) -> CaptureSession:
        session = self.session_factory()
        session.start()
        self._session = session
        return session

    async def _supervise(self, session: CaptureSession) -> None:
        delay = self.restart_delay
        try:
            while True:
                await session.wait()
                if session.error is None or self._stopping or self._session is not session:
                    return

                self._session_restarts += 1
                logger.warning(
                    "Capture session failed, restarting from saved position",
                    extra={
                        "session_id": session.session_id,
                        "error": str(session.error),
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
                if self._stopping or self._session is not session:
                    return

                session = self._start_session()
                delay = min(delay * 2, self.max_restart_delay)
                logger.info(
                    "Incremental backup session restarted",
                    extra={"session_id": session.session_id},
                )
        except asyncio.CancelledError:
            logger.debug("Capture supervisor cancelled")

    async def _stop_supervisor(self) -> None:
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)

    @property
    def stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "running": self._running,
            "fires": self._fires,
            "failed_backups": self._failed_backups,
            "session_restarts": self._session_restarts,
            "next_fire_at": self._next_fire_at.isoformat() if self._next_fire_at else None,
            "session_id": self._session.session_id if self._session else None,
        }
