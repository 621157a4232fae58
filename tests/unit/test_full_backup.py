"""
Unit tests for the full backup executor.

External client tools are replaced by a scripted runner; no MySQL server
or binaries are needed.
"""

from datetime import datetime
from pathlib import Path

import pytest

from dbaas.binlog_backup.capture.position import PositionStore
from dbaas.binlog_backup.config import DumpConfig, MySQLConfig
from dbaas.binlog_backup.snapshot.commands import BackupError, CommandResult, DumpCommandError
from dbaas.binlog_backup.snapshot.dump import (
    FullBackupExecutor,
    parse_dump_position,
    parse_status_output,
)
from dbaas.binlog_backup.source.base import LogPosition
from dbaas.binlog_backup.upload.store import InMemoryObjectStore

NOW = datetime(2024, 3, 4, 10, 15, 0)
ALL_FILE = "20240304_101500_all_databases_full_backup.sql"

DUMP_HEADER = (
    "-- MySQL dump 10.13\n"
    "--\n"
    "-- Position to start replication or point-in-time recovery from\n"
    "--\n"
    "-- CHANGE REPLICATION SOURCE TO SOURCE_LOG_FILE='binlog.000007', SOURCE_LOG_POS=157;\n"
    "CREATE DATABASE shop;\n"
)


class FakeRunner:
    """Scripted stand-in for run_command."""

    def __init__(self, dump_body=DUMP_HEADER, existing=("shop", "users"), status=""):
        self.dump_body = dump_body
        self.existing = set(existing)
        self.status = status
        self.calls = []
        self.dump_exit_codes = {}

    async def __call__(self, argv, env=None, stdin_path=None, stdout_path=None):
        self.calls.append({"argv": list(argv), "env": env or {}, "stdout_path": stdout_path})
        program = argv[0]

        if program == "mysqldump":
            target = argv[-1] if "--databases" in argv else "all"
            code = self.dump_exit_codes.get(target, 0)
            Path(stdout_path).write_text(self.dump_body)
            return CommandResult(code, stderr=b"dump error" if code else b"", argv=list(argv))

        query = argv[-1]
        if "INFORMATION_SCHEMA" in query:
            name = query.split("'")[1]
            out = f"{name}\n".encode() if name in self.existing else b""
            return CommandResult(0, stdout=out, argv=list(argv))
        if query == "SHOW MASTER STATUS":
            return CommandResult(0, stdout=self.status.encode(), argv=list(argv))
        return CommandResult(1, stderr=b"unknown query", argv=list(argv))


@pytest.fixture
def mysql_config():
    return MySQLConfig(host="db", port=3306, user="backup", password="secret")


@pytest.fixture
def store():
    return InMemoryObjectStore()


def make_executor(tmp_path, mysql_config, store, runner):
    return FullBackupExecutor(
        mysql_config,
        DumpConfig(),
        store,
        tmp_path,
        position_store=PositionStore(tmp_path),
        runner=runner,
        clock=lambda: NOW,
    )


class TestPositionParsing:
    """Tests for reading the snapshot coordinate."""

    def test_source_syntax(self, tmp_path):
        path = tmp_path / "dump.sql"
        path.write_text(DUMP_HEADER)
        assert parse_dump_position(path) == LogPosition("binlog.000007", 157)

    def test_master_syntax(self, tmp_path):
        path = tmp_path / "dump.sql"
        path.write_text(
            "-- CHANGE MASTER TO MASTER_LOG_FILE='mysql-bin.000003', MASTER_LOG_POS=4242;\n"
        )
        assert parse_dump_position(path) == LogPosition("mysql-bin.000003", 4242)

    def test_no_header(self, tmp_path):
        path = tmp_path / "dump.sql"
        path.write_text("CREATE TABLE t (id int);\n")
        assert parse_dump_position(path) is None

    def test_status_output(self):
        assert parse_status_output("binlog.000004\t891\t\t\t\n") == LogPosition(
            "binlog.000004", 891
        )
        assert parse_status_output("") is None


class TestFullBackupExecutor:
    """Tests for FullBackupExecutor."""

    @pytest.mark.asyncio
    async def test_all_databases(self, tmp_path, mysql_config, store):
        """One dump, cursor saved from the header, uploaded under its week key."""
        runner = FakeRunner()
        executor = make_executor(tmp_path, mysql_config, store, runner)

        result = await executor.run_full_backup()

        assert result.success
        assert [p.name for p in result.files] == [ALL_FILE]
        assert result.position == LogPosition("binlog.000007", 157)
        assert PositionStore(tmp_path).load() == LogPosition("binlog.000007", 157)
        assert store.objects[f"2024/10/{ALL_FILE}"] == DUMP_HEADER.encode()

        argv = runner.calls[0]["argv"]
        for flag in ("--all-databases", "--flush-logs", "--single-transaction", "--source-data=2"):
            assert flag in argv

    @pytest.mark.asyncio
    async def test_password_passed_by_environment(self, tmp_path, mysql_config, store):
        runner = FakeRunner()
        executor = make_executor(tmp_path, mysql_config, store, runner)

        await executor.run_full_backup()

        call = runner.calls[0]
        assert call["env"] == {"MYSQL_PWD": "secret"}
        assert not any("secret" in arg for arg in call["argv"])

    @pytest.mark.asyncio
    async def test_position_falls_back_to_server_status(self, tmp_path, mysql_config, store):
        runner = FakeRunner(dump_body="-- no coordinate\n", status="binlog.000009\t4\t\t\t\n")
        executor = make_executor(tmp_path, mysql_config, store, runner)

        result = await executor.run_full_backup()

        assert result.position == LogPosition("binlog.000009", 4)
        assert PositionStore(tmp_path).load() == LogPosition("binlog.000009", 4)

    @pytest.mark.asyncio
    async def test_exit_code_two_is_a_warning(self, tmp_path, mysql_config, store):
        runner = FakeRunner()
        runner.dump_exit_codes["all"] = 2
        executor = make_executor(tmp_path, mysql_config, store, runner)

        result = await executor.run_full_backup()

        assert result.success
        assert f"2024/10/{ALL_FILE}" in store.objects

    @pytest.mark.asyncio
    async def test_all_databases_failure_raises(self, tmp_path, mysql_config, store):
        """A failed dump raises and leaves cursor and bucket untouched."""
        runner = FakeRunner()
        runner.dump_exit_codes["all"] = 1
        executor = make_executor(tmp_path, mysql_config, store, runner)

        with pytest.raises(DumpCommandError) as exc_info:
            await executor.run_full_backup()

        assert exc_info.value.exit_code == 1
        assert store.objects == {}
        assert not (tmp_path / "binlog_position.txt").exists()

    @pytest.mark.asyncio
    async def test_upload_failure_raises(self, tmp_path, mysql_config, store):
        store.fail_on()
        executor = make_executor(tmp_path, mysql_config, store, FakeRunner())

        with pytest.raises(BackupError):
            await executor.run_full_backup()

    @pytest.mark.asyncio
    async def test_database_list_continues_on_error(self, tmp_path, mysql_config, store):
        """A missing or failing database does not stop the others."""
        runner = FakeRunner(existing=("shop", "users", "broken"))
        runner.dump_exit_codes["broken"] = 1
        executor = make_executor(tmp_path, mysql_config, store, runner)

        result = await executor.run_full_backup(["shop", "missing", "broken", "users"])

        assert not result.success
        assert result.failed == ["missing", "broken"]
        assert sorted(p.name for p in result.files) == [
            "20240304_101500_shop_full_backup.sql",
            "20240304_101500_users_full_backup.sql",
        ]
        assert "2024/10/20240304_101500_shop_full_backup.sql" in store.objects
        assert "2024/10/20240304_101500_users_full_backup.sql" in store.objects

    @pytest.mark.asyncio
    async def test_database_list_does_not_touch_cursor(self, tmp_path, mysql_config, store):
        executor = make_executor(tmp_path, mysql_config, store, FakeRunner())

        await executor.run_full_backup(["shop"])

        assert not (tmp_path / "binlog_position.txt").exists()

    @pytest.mark.asyncio
    async def test_existence_check_escapes_name(self, tmp_path, mysql_config, store):
        runner = FakeRunner()
        executor = make_executor(tmp_path, mysql_config, store, runner)

        assert not await executor.database_exists("x' OR '1'='1")
        assert "'x'' OR ''1''=''1'" in runner.calls[0]["argv"][-1]

    @pytest.mark.asyncio
    async def test_empty_database_list(self, tmp_path, mysql_config, store):
        executor = make_executor(tmp_path, mysql_config, store, FakeRunner())
        with pytest.raises(BackupError):
            await executor.run_full_backup([])
