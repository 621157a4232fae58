"""
E2E test fixtures for the binlog backup service.

These tests need a MySQL server with binary logging enabled (ROW format)
and an S3-compatible bucket, configured through the same environment
variables as the service itself.
"""

import os
import uuid

import pymysql
import pytest

from dbaas.binlog_backup.config import AppConfig

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("BINLOG_BACKUP_E2E_TESTS", "0") == "1"

pytestmark = pytest.mark.skipif(
    not E2E_ENABLED, reason="E2E tests disabled. Set BINLOG_BACKUP_E2E_TESTS=1 to enable."
)


@pytest.fixture
def app_config(tmp_path, monkeypatch):
    """Service configuration from the environment, with a private backup dir and prefix."""
    if not E2E_ENABLED:
        pytest.skip("E2E tests disabled")
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("S3_PREFIX", f"e2e-{uuid.uuid4().hex[:8]}")
    (tmp_path / "backups").mkdir()
    return AppConfig.from_env()


@pytest.fixture
def database(app_config):
    """A scratch database that is dropped afterwards."""
    name = f"e2e_{uuid.uuid4().hex[:8]}"
    connection = pymysql.connect(
        host=app_config.mysql.host,
        port=app_config.mysql.port,
        user=app_config.mysql.user,
        password=app_config.mysql.password,
        autocommit=True,
    )
    with connection.cursor() as cursor:
        cursor.execute(f"CREATE DATABASE {name}")
        cursor.execute(f"CREATE TABLE {name}.items (id INT PRIMARY KEY, label VARCHAR(64))")
    try:
        yield name, connection
    finally:
        with connection.cursor() as cursor:
            cursor.execute(f"DROP DATABASE IF EXISTS {name}")
        connection.close()
