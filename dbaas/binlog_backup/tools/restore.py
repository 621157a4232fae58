"""
Restore tool for binlog backups.

This tool rebuilds databases from a backup prefix in object storage:
1. Downloads every object under the prefix into the restore directory
2. Loads the full backup (all databases, or each requested database)
3. Replays incremental binlog data on top through mysqlbinlog | mysql

Incremental data comes from rotated segment files. Segments are grouped by
log identity, ordered, stitched into one binlog file per log (with the
binlog magic header) and replayed in a single mysqlbinlog run. Events
captured twice (a session resumed from an older cursor) are dropped by
their end position. The rolling weekly-binlog.log object is only replayed
when the prefix holds no segments at all.

Usage:
    binlog-backup restore all-database-full-restore backup-s3-dir=2024/10 restore-dir=/tmp/r

Invariants:
    - Downloads mirror the key layout below the restore directory
    - Multi-database restore continues past a failing database
    - The full backup is restored before any incremental data

How to change safely:
    - Test replay ordering with segments from several logs and processes
    - Keep the stream fallback best-effort; it may lack a format event
"""

from __future__ import annotations

import logging
import struct
import time
from dataclasses import dataclass, field
from itertools import groupby
from pathlib import Path
from typing import Any

from ..snapshot.commands import (
    BackupError,
    CommandRunner,
    check_result,
    connection_args,
    password_env,
    run_command,
)
from ..upload.keys import (
    ALL_DATABASES_SCOPE,
    FULL_BACKUP_SUFFIX,
    INCREMENTAL_MARKER,
    STREAM_OBJECT_NAME,
    KeyDerivationError,
    parse_segment_name,
)
from ..upload.store import ObjectStore

logger = logging.getLogger(__name__)

BINLOG_MAGIC = b"\xfebin"

# v4 event header: timestamp, type, server_id, event_size, log_pos, flags
_EVENT_HEADER = struct.Struct("<IBIIIH")
_FORMAT_DESCRIPTION_EVENT = 15

REPLAY_DIR_NAME = "replay"


@dataclass
class RestoreConfig:
    """Configuration for restore operation.

    Attributes:
        backup_prefix: Remote prefix holding the backup (e.g. "2024/10")
        restore_dir: Local directory for downloaded files
        databases: Databases to restore; None restores the all-databases dump
        skip_incremental: Only restore the full backup
        dry_run: Download and plan, but do not run mysql
    """

    backup_prefix: str
    restore_dir: str
    databases: list[str] | None = None
    skip_incremental: bool = False
    dry_run: bool = False


@dataclass
class RestoreResult:
    """Result of restore operation.

    Attributes:
        success: Whether every requested step succeeded
        full_backups: Full backup files restored
        failed: Databases (or "all databases") whose full restore failed
        segments_replayed: Segment files replayed
        events_skipped: Duplicate events dropped while stitching segments
        used_stream_fallback: Whether the rolling object was replayed
        duration_ms: Total restore duration
        error: Error message if failed
    """

    success: bool
    full_backups: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    segments_replayed: int = 0
    events_skipped: int = 0
    used_stream_fallback: bool = False
    duration_ms: int = 0
    error: str | None = None


def find_full_backup_file(restore_dir: Path, database: str | None = None) -> Path:
    """Locate the newest full backup for a database, or for all databases.

    Raises:
        BackupError: If no matching file exists
    """
    scope = database or ALL_DATABASES_SCOPE
    pattern = f"{scope}{FULL_BACKUP_SUFFIX}"
    # The timestamp prefix sorts chronologically
    candidates = sorted(
        (p for p in restore_dir.rglob(f"*_{pattern}") if p.is_file()),
        key=lambda p: p.name,
    )
    if not candidates:
        raise BackupError(f"backup file not found for pattern: {pattern}")
    return candidates[-1]


def find_segments(restore_dir: Path) -> list[Path]:
    """Segment files below restore_dir in replay order."""
    named = []
    for path in restore_dir.rglob(f"{INCREMENTAL_MARKER}_*.log"):
        if REPLAY_DIR_NAME in path.relative_to(restore_dir).parts:
            continue
        try:
            named.append((parse_segment_name(path.name), path))
        except KeyDerivationError as e:
            logger.warning(f"Ignoring unrecognized segment file {path.name}: {e}")
    named.sort(key=lambda item: item[0].sort_key)
    return [path for _, path in named]


def stitch_log(segments: list[Path], target: Path) -> int:
    """Write one binlog file from the ordered segments of a single log.

    Events are copied whole. An event whose end position is not beyond the
    highest one already written is a re-captured duplicate and is dropped,
    as is any format description event after the first.

    Returns:
        Number of events dropped
    """
    skipped = 0
    high_water = 0
    seen_format = False

    with open(target, "wb") as out:
        out.write(BINLOG_MAGIC)
        for segment in segments:
            data = segment.read_bytes()
            if data.startswith(BINLOG_MAGIC):
                data = data[len(BINLOG_MAGIC) :]

            offset = 0
            while offset + _EVENT_HEADER.size <= len(data):
                _, event_type, _, event_size, log_pos, _ = _EVENT_HEADER.unpack_from(data, offset)
                if event_size < _EVENT_HEADER.size or offset + event_size > len(data):
                    logger.warning(
                        "Truncated event in segment, ignoring the rest",
                        extra={"segment": segment.name, "offset": offset},
                    )
                    break

                event = data[offset : offset + event_size]
                offset += event_size

                if event_type == _FORMAT_DESCRIPTION_EVENT:
                    if seen_format:
                        skipped += 1
                        continue
                    seen_format = True
                elif log_pos != 0 and log_pos <= high_water:
                    skipped += 1
                    continue

                out.write(event)
                high_water = max(high_water, log_pos)

    return skipped


class RestoreTool:
    """Tool for restoring databases from backups.

    Example:
        >>> tool = RestoreTool(config, app_config.mysql, app_config.dump, store)
        >>> result = await tool.restore()
        >>> print(f"Replayed {result.segments_replayed} segments")
    """

    def __init__(
        self,
        config: RestoreConfig,
        mysql_config: Any,
        dump_config: Any,
        store: ObjectStore,
        runner: CommandRunner = run_command,
    ) -> None:
        self.config = config
        self.mysql_config = mysql_config
        self.dump_config = dump_config
        self.store = store
        self.runner = runner
        self.restore_dir = Path(config.restore_dir)

    async def restore(self) -> RestoreResult:
        """Execute the restore operation.

        Returns:
            RestoreResult indicating success/failure
        """
        start_time = time.time()
        result = RestoreResult(success=False)

        try:
            logger.info(
                "Starting restore",
                extra={
                    "backup_prefix": self.config.backup_prefix,
                    "restore_dir": str(self.restore_dir),
                    "databases": self.config.databases,
                },
            )

            downloaded = await self.download()
            logger.info(f"Downloaded {downloaded} files")

            if self.config.databases is None:
                backup_file = find_full_backup_file(self.restore_dir)
                await self._restore_full(backup_file, None)
                result.full_backups.append(backup_file.name)
            else:
                for database in self.config.databases:
                    logger.info(f"Restoring database: {database}")
                    try:
                        backup_file = find_full_backup_file(self.restore_dir, database)
                        await self._restore_full(backup_file, database)
                        result.full_backups.append(backup_file.name)
                    except BackupError as e:
                        result.failed.append(database)
                        logger.error(f"Failed to restore full backup for database {database}: {e}")

            if not self.config.skip_incremental:
                await self._restore_incremental(result)

            result.success = not result.failed

        except Exception as e:
            logger.error(f"Restore failed: {e}", exc_info=True)
            result.success = False
            result.error = str(e)
            if self.config.databases is None and not result.full_backups:
                result.failed.append("all databases")

        result.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Restore finished",
            extra={
                "success": result.success,
                "full_backups": result.full_backups,
                "segments_replayed": result.segments_replayed,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def download(self) -> int:
        """Download every object under the backup prefix.

        Returns:
            Number of files written
        """
        prefix = self.config.backup_prefix.strip("/")
        keys = await self.store.list(prefix)
        self.restore_dir.mkdir(parents=True, exist_ok=True)

        written = 0
        for key in keys:
            relative = key[len(prefix) :].lstrip("/") if prefix else key
            if not relative or relative.endswith("/"):
                continue
            destination = self.restore_dir / relative
            logger.debug(f"Downloading {key} to {destination}")
            try:
                data = await self.store.get(key)
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_bytes(data)
                written += 1
            except Exception as e:
                logger.error(f"Failed to download file {key}: {e}")
        return written

    async def _restore_full(self, backup_file: Path, database: str | None) -> None:
        target = database or "all databases"
        if self.config.dry_run:
            logger.info(f"Dry run: would restore {target} from {backup_file.name}")
            return

        argv = [self.dump_config.mysql_bin, *connection_args(self.mysql_config)]
        if database:
            argv.append(database)
        outcome = await self.runner(
            argv, env=password_env(self.mysql_config), stdin_path=backup_file
        )
        check_result(outcome, self.dump_config.mysql_bin, target, "restore")
        logger.info(f"Restore of {target} completed successfully")

    async def _restore_incremental(self, result: RestoreResult) -> None:
        segments = find_segments(self.restore_dir)
        replay_dir = self.restore_dir / REPLAY_DIR_NAME
        replay_dir.mkdir(parents=True, exist_ok=True)

        binlog_files: list[Path] = []
        if segments:
            for log_identity, group in groupby(
                segments, key=lambda p: parse_segment_name(p.name).log_identity
            ):
                ordered = list(group)
                target = replay_dir / log_identity
                result.events_skipped += stitch_log(ordered, target)
                result.segments_replayed += len(ordered)
                binlog_files.append(target)
        else:
            streams = sorted(
                p
                for p in self.restore_dir.rglob(STREAM_OBJECT_NAME)
                if REPLAY_DIR_NAME not in p.relative_to(self.restore_dir).parts
            )
            if not streams:
                logger.info(f"No incremental backup found in {self.restore_dir}")
                return
            logger.warning(
                "No segments found, replaying rolling binlog objects",
                extra={"files": [str(p) for p in streams]},
            )
            result.used_stream_fallback = True
            for index, stream in enumerate(streams):
                target = replay_dir / f"{STREAM_OBJECT_NAME}.{index:03d}"
                stitch_log([stream], target)
                binlog_files.append(target)

        await self._replay_binlogs(binlog_files, replay_dir)

    async def _replay_binlogs(self, binlog_files: list[Path], replay_dir: Path) -> None:
        if self.config.dry_run:
            logger.info(f"Dry run: would replay {[p.name for p in binlog_files]}")
            return

        sql_file = replay_dir / "replay.sql"
        decode = await self.runner(
            [self.dump_config.mysqlbinlog_bin, *[str(p) for p in binlog_files]],
            stdout_path=sql_file,
        )
        check_result(decode, self.dump_config.mysqlbinlog_bin, "binlog", "decode")

        apply = await self.runner(
            [self.dump_config.mysql_bin, *connection_args(self.mysql_config)],
            env=password_env(self.mysql_config),
            stdin_path=sql_file,
        )
        check_result(apply, self.dump_config.mysql_bin, "binlog", "restore")
        logger.info("Restore from binlog completed successfully")
