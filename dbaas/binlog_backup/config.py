"""
Configuration management for the binlog backup service.

All configuration is done via environment variables (a `.env` file in the
working directory is loaded first by the CLI). This module provides typed
configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development, except
      the MySQL credentials and the bucket, which must be set explicitly
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep variable names aligned with the deployment's .env files
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class MySQLConfig:
    """MySQL connection configuration.

    Attributes:
        host: Server host name or address
        port: Server port
        user: User with dump, replication and restore privileges
        password: Password for the user
        server_id: Replica server id used by the binlog stream
        heartbeat_seconds: Interval at which the server sends heartbeats on
            an idle binlog stream; reads time out after three missed ones
    """

    host: str = ""
    port: int = 3306
    user: str = ""
    password: str = ""
    server_id: int = 100
    heartbeat_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> MySQLConfig:
        """Load configuration from environment variables."""
        port_str = os.getenv("MYSQL_PORT", "3306")
        try:
            port = int(port_str)
        except ValueError:
            raise ValueError(f"Error parsing MYSQL_PORT: {port_str!r} is not an integer")

        return cls(
            host=os.getenv("MYSQL_HOST", ""),
            port=port,
            user=os.getenv("MYSQL_USER", ""),
            password=os.getenv("MYSQL_PASSWORD", ""),
            server_id=int(os.getenv("MYSQL_SERVER_ID", "100")),
            heartbeat_seconds=float(os.getenv("MYSQL_HEARTBEAT_SECONDS", "5")),
        )

    def validate(self) -> None:
        if not self.host:
            raise ValueError("MYSQL_HOST is required")
        if not self.user:
            raise ValueError("MYSQL_USER is required")
        if not self.password:
            raise ValueError("MYSQL_PASSWORD is required")
        if self.port <= 0:
            raise ValueError("MYSQL_PORT must be a positive integer")
        if self.heartbeat_seconds <= 0:
            raise ValueError("MYSQL_HEARTBEAT_SECONDS must be positive")


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for backup artifacts.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Optional key prefix prepended to every object
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = ""
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("AWS_S3_BUCKET", ""),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_PREFIX", ""),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class CaptureConfig:
    """Incremental capture configuration.

    Attributes:
        backup_dir: Local directory for dumps, segments and the cursor
        buffer_size_bytes: In-memory buffer flush threshold
        max_segment_size_bytes: Segment size that triggers rotation
        max_pull_retries: Consecutive event read failures before giving up
        retry_base_delay_ms: First backoff delay
        retry_max_delay_ms: Backoff delay cap
        checkpoint: Persist the cursor after every segment rotation
        retain_local_segments: Keep segment files after upload
        upload_timeout_seconds: Timeout for a single upload
    """

    backup_dir: str = "/var/backups/mysql"
    buffer_size_bytes: int = 2 * 1024 * 1024  # 2MB
    max_segment_size_bytes: int = 10 * 1024 * 1024  # 10MB
    max_pull_retries: int = 10
    retry_base_delay_ms: int = 100
    retry_max_delay_ms: int = 30000
    checkpoint: bool = True
    retain_local_segments: bool = True
    upload_timeout_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> CaptureConfig:
        """Load configuration from environment variables."""
        return cls(
            backup_dir=os.getenv("BACKUP_DIR", "/var/backups/mysql"),
            buffer_size_bytes=int(os.getenv("CAPTURE_BUFFER_BYTES", str(2 * 1024 * 1024))),
            max_segment_size_bytes=int(
                os.getenv("CAPTURE_MAX_SEGMENT_BYTES", str(10 * 1024 * 1024))
            ),
            max_pull_retries=int(os.getenv("CAPTURE_MAX_PULL_RETRIES", "10")),
            retry_base_delay_ms=int(os.getenv("CAPTURE_RETRY_BASE_DELAY_MS", "100")),
            retry_max_delay_ms=int(os.getenv("CAPTURE_RETRY_MAX_DELAY_MS", "30000")),
            checkpoint=_env_bool("CAPTURE_CHECKPOINT", "true"),
            retain_local_segments=_env_bool("BACKUP_RETAIN_LOCAL_SEGMENTS", "true"),
            upload_timeout_seconds=float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "300")),
        )

    def validate(self) -> None:
        if not self.backup_dir:
            raise ValueError("BACKUP_DIR is required")
        if self.buffer_size_bytes <= 0:
            raise ValueError("CAPTURE_BUFFER_BYTES must be positive")
        if self.max_segment_size_bytes <= 0:
            raise ValueError("CAPTURE_MAX_SEGMENT_BYTES must be positive")
        if self.max_pull_retries < 0:
            raise ValueError("CAPTURE_MAX_PULL_RETRIES must not be negative")


@dataclass(frozen=True)
class DumpConfig:
    """External client tool configuration.

    Attributes:
        mysqldump_bin: mysqldump executable
        mysql_bin: mysql client executable
        mysqlbinlog_bin: mysqlbinlog executable
        position_flag: mysqldump flag that records the binlog coordinate
            in the dump header ("--master-data=2" for servers before 8.0.26)
    """

    mysqldump_bin: str = "mysqldump"
    mysql_bin: str = "mysql"
    mysqlbinlog_bin: str = "mysqlbinlog"
    position_flag: str = "--source-data=2"

    @classmethod
    def from_env(cls) -> DumpConfig:
        """Load configuration from environment variables."""
        return cls(
            mysqldump_bin=os.getenv("MYSQLDUMP_BIN", "mysqldump"),
            mysql_bin=os.getenv("MYSQL_BIN", "mysql"),
            mysqlbinlog_bin=os.getenv("MYSQLBINLOG_BIN", "mysqlbinlog"),
            position_flag=os.getenv("MYSQLDUMP_POSITION_FLAG", "--source-data=2"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class AppConfig:
    """Complete service configuration.

    Attributes:
        mysql: MySQL connection configuration
        s3: S3 configuration
        capture: Incremental capture configuration
        dump: External client tool configuration
        observability: Logging configuration
    """

    mysql: MySQLConfig = field(default_factory=MySQLConfig)
    s3: S3Config = field(default_factory=S3Config)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    dump: DumpConfig = field(default_factory=DumpConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            mysql=MySQLConfig.from_env(),
            s3=S3Config.from_env(),
            capture=CaptureConfig.from_env(),
            dump=DumpConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        self.mysql.validate()
        self.capture.validate()

        if not self.s3.bucket:
            raise ValueError("AWS_S3_BUCKET environment variable is not set")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.capture.backup_dir):
            logger.warning(
                f"Backup directory does not exist: {self.capture.backup_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Backup configuration loaded",
            extra={
                "mysql_host": self.mysql.host,
                "mysql_port": self.mysql.port,
                "mysql_user": self.mysql.user,
                "s3_bucket": self.s3.bucket,
                "s3_prefix": self.s3.prefix,
                "s3_endpoint": self.s3.endpoint_url,
                "backup_dir": self.capture.backup_dir,
                "buffer_size_bytes": self.capture.buffer_size_bytes,
                "max_segment_size_bytes": self.capture.max_segment_size_bytes,
                "checkpoint": self.capture.checkpoint,
                "log_level": self.observability.log_level,
            },
        )
