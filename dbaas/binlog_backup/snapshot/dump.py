"""
Full backup executor.

Produces the weekly full snapshot that the incremental chain builds on:
1. Dumps all databases (one file) or each listed database (one file each)
2. For the all-databases scope, records the binlog coordinate at snapshot
   consistency into the cursor store
3. Uploads each dump under its ISO-week key

Dump files are named `<YYYYMMDD_HHMMSS>_<scope>_full_backup.sql` and kept in
the backup directory.

Invariants:
    - The cursor is only written for the all-databases scope, after the
      dump succeeded and before it is uploaded
    - Per-database backups are isolated: one failure does not stop the rest
    - mysqldump exit code 2 is a warning, not a failure

How to change safely:
    - Keep the coordinate read from the dump header; SHOW MASTER STATUS
      after the fact can be ahead of the snapshot
    - Inject a runner in tests instead of calling real client tools
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Sequence

from ..capture.position import PositionStore
from ..source.base import LogPosition
from ..upload.keys import ALL_DATABASES_SCOPE, full_backup_file_name, full_backup_key
from ..upload.store import ObjectStore
from .commands import (
    BackupError,
    CommandRunner,
    DumpCommandError,
    check_result,
    connection_args,
    password_env,
    run_command,
)

logger = logging.getLogger(__name__)

# Written by --source-data=2 (8.0.26+) or --master-data=2 as a commented
# CHANGE REPLICATION SOURCE / CHANGE MASTER statement near the top of the dump
_DUMP_POSITION_RE = re.compile(
    r"(?:MASTER|SOURCE)_LOG_FILE\s*=\s*'([^']+)'\s*,\s*(?:MASTER|SOURCE)_LOG_POS\s*=\s*(\d+)"
)
_HEADER_SCAN_LINES = 200

_STATUS_QUERIES = ("SHOW MASTER STATUS", "SHOW BINARY LOG STATUS")


def parse_dump_position(path: str | Path) -> LogPosition | None:
    """Read the binlog coordinate from a dump file header, if present."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for index, line in enumerate(f):
                if index >= _HEADER_SCAN_LINES:
                    break
                match = _DUMP_POSITION_RE.search(line)
                if match:
                    return LogPosition(match.group(1), int(match.group(2)))
    except OSError as e:
        logger.warning(f"Could not read dump header of {path}: {e}")
    return None


def parse_status_output(output: str) -> LogPosition | None:
    """Parse `mysql -N -e 'SHOW MASTER STATUS'` output (tab separated)."""
    for line in output.splitlines():
        fields = line.split("\t")
        if len(fields) >= 2 and fields[0].strip() and fields[1].strip().isdigit():
            return LogPosition(fields[0].strip(), int(fields[1]))
    return None


def _sql_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


@dataclass
class FullBackupResult:
    """Outcome of one full backup run.

    Attributes:
        files: Local dump files written and uploaded
        failed: Databases (or the all-databases scope) that failed
        position: Cursor recorded for the all-databases scope
        errors: Error message per failed target
    """

    files: list[Path] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    position: LogPosition | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


class FullBackupExecutor:
    """Runs mysqldump and ships the resulting files.

    Attributes:
        mysql_config: MySQLConfig with connection settings
        dump_config: DumpConfig with client tool locations
        store: Object store receiving the dumps
        backup_dir: Local directory for dump files
        position_store: Cursor store updated on all-databases backups

    Example:
        >>> executor = FullBackupExecutor(config.mysql, config.dump, store, backup_dir)
        >>> result = await executor.run_full_backup()
        >>> result = await executor.run_full_backup(["orders", "users"])
    """

    def __init__(
        self,
        mysql_config: Any,
        dump_config: Any,
        store: ObjectStore,
        backup_dir: str | Path,
        position_store: PositionStore | None = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.mysql_config = mysql_config
        self.dump_config = dump_config
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.position_store = position_store or PositionStore(self.backup_dir)
        self.runner = runner
        self.clock = clock

    async def run_full_backup(self, databases: Sequence[str] | None = None) -> FullBackupResult:
        """Back up all databases, or each of the given databases.

        Args:
            databases: Database names; None backs up every database in one dump

        Raises:
            BackupError: If the all-databases dump or its upload fails, or
                an empty database list is given
        """
        logger.info("Full backup started", extra={"databases": list(databases or [])})
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        if databases is None:
            result = await self._backup_all()
        else:
            if not databases:
                raise BackupError("no database specified for backup")
            result = FullBackupResult()
            for database in databases:
                try:
                    path = await self._backup_single(database)
                    result.files.append(path)
                except BackupError as e:
                    result.failed.append(database)
                    result.errors[database] = str(e)
                    logger.error(f"Failed to backup database {database}: {e}")

        logger.info(
            "Full backup finished",
            extra={"files": [p.name for p in result.files], "failed": result.failed},
        )
        return result

    async def _backup_all(self) -> FullBackupResult:
        file_name = full_backup_file_name(ALL_DATABASES_SCOPE, self.clock())
        path = self.backup_dir / file_name

        argv = [
            self.dump_config.mysqldump_bin,
            *connection_args(self.mysql_config),
            "--all-databases",
            "--flush-logs",
            "--single-transaction",
        ]
        if self.dump_config.position_flag:
            argv.append(self.dump_config.position_flag)

        dump = await self.runner(argv, env=password_env(self.mysql_config), stdout_path=path)
        check_result(dump, self.dump_config.mysqldump_bin, "all databases", "backup")

        position = await self._snapshot_position(path)
        if position is not None:
            self.position_store.save(position)
            logger.info(
                "Saved binlog position",
                extra={"log_identity": position.log_identity, "offset": position.offset},
            )
        else:
            logger.error("Could not determine binlog position for full backup")

        await self._upload(path)
        return FullBackupResult(files=[path], position=position)

    async def _backup_single(self, database: str) -> Path:
        if not await self.database_exists(database):
            raise BackupError(f"database {database} does not exist")

        file_name = full_backup_file_name(database, self.clock())
        path = self.backup_dir / file_name
        argv = [
            self.dump_config.mysqldump_bin,
            *connection_args(self.mysql_config),
            "--single-transaction",
            "--databases",
            database,
        ]
        dump = await self.runner(argv, env=password_env(self.mysql_config), stdout_path=path)
        check_result(dump, self.dump_config.mysqldump_bin, database, "backup")

        await self._upload(path)
        logger.info(f"Backup {database} completed")
        return path

    async def database_exists(self, database: str) -> bool:
        """Check INFORMATION_SCHEMA for the database through the mysql client."""
        query = (
            "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA "
            f"WHERE SCHEMA_NAME = {_sql_literal(database)}"
        )
        result = await self._query(query)
        check_result(result, self.dump_config.mysql_bin, database, "existence check")
        return any(line.strip() == database for line in result.stdout.decode().splitlines())

    async def _snapshot_position(self, dump_path: Path) -> LogPosition | None:
        loop = asyncio.get_running_loop()
        position = await loop.run_in_executor(None, parse_dump_position, dump_path)
        if position is not None:
            return position

        logger.warning("No binlog coordinate in dump header, querying server status")
        for query in _STATUS_QUERIES:
            try:
                result = await self._query(query)
            except DumpCommandError as e:
                logger.error(f"error fetching binlog position: {e}")
                return None
            if result.ok:
                position = parse_status_output(result.stdout.decode())
                if position is not None:
                    return position
        return None

    async def _query(self, query: str) -> Any:
        argv = [self.dump_config.mysql_bin, *connection_args(self.mysql_config), "-N", "-e", query]
        return await self.runner(argv, env=password_env(self.mysql_config))

    async def _upload(self, path: Path) -> None:
        key = full_backup_key(path.name)
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, path.read_bytes)
        except OSError as e:
            raise BackupError(f"error reading backup file {path}: {e}") from e

        try:
            await self.store.put(key, data)
        except Exception as e:
            raise BackupError(f"failed to upload backup {path.name}: {e}") from e

        logger.info("Uploaded full backup", extra={"key": key, "size_bytes": len(data)})
