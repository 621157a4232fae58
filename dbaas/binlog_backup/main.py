"""
Binlog backup service - Main entry point.

Commands (arguments are key=value tokens):
    binlog-backup backup all-database-full-backup
    binlog-backup backup database=<db> | databases=<db1,db2>
    binlog-backup restore all-database-full-restore backup-s3-dir=<prefix> restore-dir=<dir>
    binlog-backup restore database=<db> backup-s3-dir=<prefix> restore-dir=<dir>
    binlog-backup incremental-backup
    binlog-backup enable-all-backup-scheduler weekday=Mon hour=00:00

Configuration is entirely via environment variables, optionally from a
`.env` file in the working directory. See config.py for all settings.

Invariants:
    - Configuration errors exit with status 1 before anything runs
    - SIGINT/SIGTERM stop the scheduler and the capture session, then wait
      briefly for in-flight uploads
    - All components share one object store and one segment counter

How to change safely:
    - Add commands as new subparsers plus a BackupService method
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import json_log_formatter
from dotenv import load_dotenv

from .capture import CaptureLoop, CaptureSession, PositionStore, RetryPolicy, SegmentSequence
from .config import AppConfig
from .schedule import BackupScheduler, ScheduleSpec
from .snapshot import FullBackupExecutor, FullBackupResult
from .source import create_event_source
from .tools import RestoreConfig, RestoreResult, RestoreTool
from .upload import S3ObjectStore, UploadCoordinator

logger = logging.getLogger(__name__)

DRAIN_TIMEOUT_SECONDS = 30.0

COMMANDS = ("backup", "restore", "incremental-backup", "enable-all-backup-scheduler")


class CliError(ValueError):
    """Invalid command line arguments."""

    pass


def setup_logging(config: AppConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("pymysqlreplication").setLevel(logging.WARNING)


@dataclass
class Command:
    """A parsed CLI command.

    Attributes:
        name: One of COMMANDS
        databases: Databases to back up or restore; None means all
        backup_prefix: Remote prefix to restore from
        restore_dir: Local directory to restore into
        schedule: Weekly full backup schedule
    """

    name: str
    databases: list[str] | None = None
    backup_prefix: str | None = None
    restore_dir: str | None = None
    schedule: ScheduleSpec | None = None


def _split_tokens(tokens: Sequence[str]) -> tuple[list[str], dict[str, str]]:
    flags: list[str] = []
    values: dict[str, str] = {}
    for token in tokens:
        if "=" in token:
            key, value = token.split("=", 1)
            values[key] = value
        else:
            flags.append(token)
    return flags, values


def _database_scope(
    flags: list[str], values: dict[str, str], all_flag: str, action: str
) -> list[str] | None:
    if all_flag in flags:
        return None
    if "database" in values:
        if not values["database"]:
            raise CliError(
                f"invalid argument for single database {action}. Usage: database=db_name"
            )
        return [values["database"]]
    if "databases" in values:
        databases = [db.strip() for db in values["databases"].split(",") if db.strip()]
        if not databases:
            raise CliError(
                f"invalid argument for multiple databases {action}. Usage: databases=db1,db2,db3"
            )
        return databases
    unknown = flags[0] if flags else ""
    raise CliError(
        f"unknown {action} type: {unknown!r}, one of {all_flag}, database=db_name, "
        "or databases=db1,db2,db3 must be provided"
    )


def parse_command(name: str, tokens: Sequence[str]) -> Command:
    """Turn a command name and its key=value tokens into a Command.

    Raises:
        CliError: If required arguments are missing or malformed
    """
    flags, values = _split_tokens(tokens)

    if name == "backup":
        databases = _database_scope(flags, values, "all-database-full-backup", "backup")
        return Command(name, databases=databases)

    if name == "restore":
        backup_prefix = values.get("backup-s3-dir", "")
        restore_dir = values.get("restore-dir", "")
        if not backup_prefix or not restore_dir:
            raise CliError(
                "for restore, both backup-s3-dir and restore-dir must be provided "
                "(e.g., backup-s3-dir=your/s3/path restore-dir=/your/restore/path)"
            )
        return Command(
            name,
            databases=_database_scope(flags, values, "all-database-full-restore", "restore"),
            backup_prefix=backup_prefix,
            restore_dir=restore_dir,
        )

    if name == "incremental-backup":
        return Command(name)

    if name == "enable-all-backup-scheduler":
        weekday = values.get("weekday", "")
        hour = values.get("hour", "")
        if not weekday or not hour:
            raise CliError(
                "for enable-all-backup-scheduler, both weekday and hour must be provided "
                "(e.g., weekday=Mon hour=00:00)"
            )
        return Command(name, schedule=ScheduleSpec.parse(weekday, hour))

    raise CliError(f"invalid command: {name}, should be one of {', '.join(COMMANDS)}")


class BackupService:
    """Wires configuration into the backup components.

    Attributes:
        config: Service configuration
        store: Object store shared by every component
        uploader: Upload coordinator for capture sessions
        executor: Full backup executor
        sequence: Segment counter shared by all capture sessions

    Example:
        >>> service = BackupService(AppConfig.from_env())
        >>> exit_code = await service.execute(parse_command("incremental-backup", []))
        >>> await service.stop()
    """

    def __init__(self, config: AppConfig, store: Any | None = None) -> None:
        self.config = config
        self.backup_dir = Path(config.capture.backup_dir)
        self.store = store or S3ObjectStore(config.s3)
        self.position_store = PositionStore(self.backup_dir)
        self.sequence = SegmentSequence()
        self.uploader = UploadCoordinator(
            self.store,
            retain_local_segments=config.capture.retain_local_segments,
            upload_timeout=config.capture.upload_timeout_seconds,
        )
        self.executor = FullBackupExecutor(
            config.mysql,
            config.dump,
            self.store,
            self.backup_dir,
            position_store=self.position_store,
        )

        self.scheduler: BackupScheduler | None = None
        self.session: CaptureSession | None = None
        self._shutdown_event = asyncio.Event()
        self._stopped = False

    def new_session(self) -> CaptureSession:
        """Build a capture session reading from a fresh event source."""
        capture = self.config.capture
        loop = CaptureLoop(
            source=create_event_source(self.config),
            backup_dir=self.backup_dir,
            uploader=self.uploader,
            position_store=self.position_store,
            sequence=self.sequence,
            buffer_size=capture.buffer_size_bytes,
            max_segment_size=capture.max_segment_size_bytes,
            retry_policy=RetryPolicy(
                max_retries=capture.max_pull_retries,
                base_delay=capture.retry_base_delay_ms / 1000,
                max_delay=capture.retry_max_delay_ms / 1000,
            ),
            checkpoint=capture.checkpoint,
        )
        return CaptureSession(loop)

    async def execute(self, command: Command) -> int:
        """Run a command to completion (or until shutdown) and return an exit code."""
        if command.name == "backup":
            result = await self.run_full_backup(command.databases)
            return 0 if result.success else 1
        if command.name == "restore":
            restore = await self.restore(
                RestoreConfig(
                    backup_prefix=command.backup_prefix,
                    restore_dir=command.restore_dir,
                    databases=command.databases,
                )
            )
            return 0 if restore.success else 1
        if command.name == "incremental-backup":
            return await self.run_incremental()
        if command.name == "enable-all-backup-scheduler":
            await self.run_scheduler(command.schedule)
            return 0
        raise CliError(f"invalid command: {command.name}")

    async def run_full_backup(self, databases: list[str] | None = None) -> FullBackupResult:
        result = await self.executor.run_full_backup(databases)
        if not result.success:
            logger.error("Full backup finished with failures", extra={"failed": result.failed})
        return result

    async def restore(self, restore_config: RestoreConfig) -> RestoreResult:
        tool = RestoreTool(restore_config, self.config.mysql, self.config.dump, self.store)
        return await tool.restore()

    async def run_incremental(self) -> int:
        """Capture binlog events from the saved cursor until shutdown."""
        self.session = self.new_session()
        self.session.start()
        await self._wait_for_shutdown(self.session.wait())
        if self.session.error is not None:
            return 1
        return 0

    async def run_scheduler(self, spec: ScheduleSpec) -> None:
        """Run the weekly full backup schedule until shutdown."""
        logger.info(f"Enabling backup scheduler every {spec}")
        self.scheduler = BackupScheduler(self.executor.run_full_backup, self.new_session)
        await self._wait_for_shutdown(self.scheduler.enable(spec))

    async def _wait_for_shutdown(self, work: Any) -> None:
        work_task = asyncio.ensure_future(work)
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({work_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work_task, shutdown_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(work_task, shutdown_task, return_exceptions=True)

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop capture, wait briefly for uploads, release the store."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping binlog backup service")

        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.session is not None:
            await self.session.cancel_and_wait(timeout=DRAIN_TIMEOUT_SECONDS)

        try:
            await asyncio.wait_for(self.uploader.drain(), timeout=DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Uploads still in flight at shutdown, abandoning them",
                extra={"in_flight": self.uploader.in_flight},
            )
            await self.uploader.cancel_all()

        await self.store.close()
        logger.info("Binlog backup service stopped", extra=self.uploader.stats)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="binlog-backup",
        description="MySQL full and incremental binlog backup to S3",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Run a full backup now")
    backup.add_argument(
        "args", nargs="*", help="all-database-full-backup | database=db | databases=db1,db2"
    )

    restore = subparsers.add_parser("restore", help="Restore from a backup prefix")
    restore.add_argument(
        "args",
        nargs="*",
        help="all-database-full-restore | database=db | databases=db1,db2, "
        "plus backup-s3-dir=<prefix> restore-dir=<dir>",
    )

    incremental = subparsers.add_parser(
        "incremental-backup", help="Capture binlog events from the saved position"
    )
    incremental.add_argument("args", nargs="*", help=argparse.SUPPRESS)

    scheduler = subparsers.add_parser(
        "enable-all-backup-scheduler", help="Weekly full backup plus continuous capture"
    )
    scheduler.add_argument("args", nargs="*", help="weekday=<Mon..Sun> hour=<HH:MM>")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        command = parse_command(args.command, args.args)
        config = AppConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)
    config.log_config()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    service = BackupService(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 1
    try:
        exit_code = loop.run_until_complete(service.execute(command))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Command {command.name} failed: {e}", exc_info=True)
    finally:
        loop.run_until_complete(service.stop())
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
