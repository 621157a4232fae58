"""
Unit tests for environment configuration.
"""

import pytest

from dbaas.binlog_backup.config import (
    AppConfig,
    CaptureConfig,
    DumpConfig,
    MySQLConfig,
    S3Config,
)

REQUIRED_ENV = {
    "MYSQL_HOST": "db.internal",
    "MYSQL_USER": "backup",
    "MYSQL_PASSWORD": "secret",
    "AWS_S3_BUCKET": "backups",
}


@pytest.fixture
def env(monkeypatch, tmp_path):
    for key in (
        "MYSQL_PORT",
        "MYSQL_HEARTBEAT_SECONDS",
        "S3_PREFIX",
        "S3_ENDPOINT",
        "CAPTURE_BUFFER_BYTES",
        "CAPTURE_CHECKPOINT",
        "LOG_FORMAT",
        "MYSQLDUMP_POSITION_FLAG",
    ):
        monkeypatch.delenv(key, raising=False)
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path))
    return monkeypatch


class TestAppConfig:
    """Tests for AppConfig.from_env."""

    def test_loads_required_settings(self, env, tmp_path):
        config = AppConfig.from_env()

        assert config.mysql.host == "db.internal"
        assert config.mysql.port == 3306
        assert config.s3.bucket == "backups"
        assert config.capture.backup_dir == str(tmp_path)
        assert config.capture.buffer_size_bytes == 2 * 1024 * 1024
        assert config.capture.max_segment_size_bytes == 10 * 1024 * 1024
        assert config.capture.checkpoint is True

    @pytest.mark.parametrize("missing", sorted(REQUIRED_ENV))
    def test_missing_required_setting(self, env, missing):
        env.delenv(missing)
        with pytest.raises(ValueError):
            AppConfig.from_env()

    def test_invalid_port(self, env):
        env.setenv("MYSQL_PORT", "not-a-port")
        with pytest.raises(ValueError, match="MYSQL_PORT"):
            AppConfig.from_env()

    def test_invalid_log_format(self, env):
        env.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            AppConfig.from_env()

    def test_password_not_logged(self, env, caplog):
        config = AppConfig.from_env()
        with caplog.at_level("INFO"):
            config.log_config()
        for record in caplog.records:
            assert "secret" not in str(record.__dict__)

    def test_overrides(self, env):
        env.setenv("CAPTURE_BUFFER_BYTES", "1024")
        env.setenv("CAPTURE_CHECKPOINT", "false")
        env.setenv("S3_PREFIX", "mysql/prod")
        env.setenv("MYSQLDUMP_POSITION_FLAG", "--master-data=2")

        config = AppConfig.from_env()

        assert config.capture.buffer_size_bytes == 1024
        assert config.capture.checkpoint is False
        assert config.s3.prefix == "mysql/prod"
        assert config.dump.position_flag == "--master-data=2"

    def test_heartbeat_interval(self, env):
        assert AppConfig.from_env().mysql.heartbeat_seconds == 5.0

        env.setenv("MYSQL_HEARTBEAT_SECONDS", "2.5")
        assert AppConfig.from_env().mysql.heartbeat_seconds == 2.5


class TestSectionValidation:
    """Tests for individual section validation."""

    def test_mysql_port_must_be_positive(self):
        with pytest.raises(ValueError):
            MySQLConfig(host="h", user="u", password="p", port=0).validate()

    def test_mysql_heartbeat_must_be_positive(self):
        with pytest.raises(ValueError, match="MYSQL_HEARTBEAT_SECONDS"):
            MySQLConfig(host="h", user="u", password="p", heartbeat_seconds=0).validate()

    def test_capture_sizes_must_be_positive(self):
        with pytest.raises(ValueError):
            CaptureConfig(buffer_size_bytes=0).validate()

    def test_defaults(self):
        assert S3Config().region == "us-east-1"
        assert DumpConfig().mysqldump_bin == "mysqldump"
