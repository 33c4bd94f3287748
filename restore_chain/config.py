"""
Configuration settings for the restore chain resolver.

This module defines all configuration settings using Pydantic classes.
It handles environment variable loading and validation.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables
load_dotenv()


class MSSQLSettings(BaseSettings):
    """SQL Server connection settings.

    Attributes:
        server: SQL Server hostname or IP address
        port: SQL Server port number
        user: SQL Server authentication username
        password: SQL Server authentication password
        timeout: Query timeout in seconds (restores can run long)
        login_timeout: Connection timeout in seconds
        retry_attempts: Connection attempts before giving up
        retry_delay: Delay between connection attempts in seconds
    """

    server: str = Field(default="localhost", description="MSSQL server address")
    port: str = Field(default="1433", description="MSSQL server port")
    user: str = Field(default="sa", description="MSSQL username")
    password: SecretStr = Field(default=SecretStr(""), description="MSSQL password")
    timeout: int = Field(default=0, description="Query timeout in seconds, 0 waits forever")
    login_timeout: int = Field(default=60, description="Connection timeout in seconds")
    retry_attempts: int = Field(default=3, ge=1, description="Connection attempts")
    retry_delay: int = Field(default=5, ge=0, description="Delay between connection attempts")

    model_config = SettingsConfigDict(
        env_prefix="MSSQL_", extra="ignore", env_file=".env"
    )

    def get_connection_dict(self) -> dict:
        """Get pymssql connection parameters as a dictionary."""
        return {
            "server": self.server,
            "port": self.port,
            "user": self.user,
            "password": self.password.get_secret_value(),
            "timeout": self.timeout,
            "login_timeout": self.login_timeout,
        }


class ScanSettings(BaseSettings):
    """Backup header scanning settings.

    Attributes:
        backup_dir: Directory holding the backup files to catalog
        file_patterns: File extensions considered backup files
        max_workers: Header reads running at the same time (1-10)
        verify_files: Confirm every file still exists before planning
        read_marks: Load marked transactions for log backups from msdb
        check_version: Reject backups taken by a newer SQL Server
    """

    backup_dir: str = Field(default="/data/backups", description="Backup directory")
    file_patterns: List[str] = Field(
        default=[".bak", ".trn", ".dif"], description="Backup file extensions"
    )
    max_workers: int = Field(default=4, description="Concurrent header reads")
    verify_files: bool = Field(default=True, description="Check files before planning")
    read_marks: bool = Field(default=True, description="Load log marks from msdb")
    check_version: bool = Field(default=True, description="Reject newer backups")

    model_config = SettingsConfigDict(
        env_prefix="SCAN_", extra="ignore", env_file=".env"
    )

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v):
        """SQL Server serializes header reads, so keep the pool small."""
        if not 1 <= v <= 10:
            raise ValueError("max_workers must be between 1 and 10")
        return v


class RestoreSettings(BaseSettings):
    """Restore execution settings.

    Attributes:
        data_directory: Directory data files are moved to, if relocating
        log_directory: Directory log files are moved to, if relocating
        replace: Overwrite an existing database with the full backup
        end_state: RECOVERY, NORECOVERY or STANDBY for the last step
        standby_directory: Where STANDBY undo files are written
        max_parallel_databases: Databases restored at the same time
        stats_percent: Progress reporting interval of RESTORE
        online_timeout: Seconds to wait for a recovered database to come online
    """

    data_directory: Optional[str] = Field(default=None, description="Data file directory")
    log_directory: Optional[str] = Field(default=None, description="Log file directory")
    replace: bool = Field(default=False, description="Restore WITH REPLACE")
    end_state: str = Field(default="RECOVERY", description="End state of the last step")
    standby_directory: str = Field(
        default="/var/opt/mssql/standby", description="Standby undo file directory"
    )
    max_parallel_databases: int = Field(default=2, description="Concurrent database restores")
    stats_percent: int = Field(default=10, description="RESTORE STATS interval")
    online_timeout: int = Field(default=300, description="Wait for ONLINE in seconds")

    model_config = SettingsConfigDict(
        env_prefix="RESTORE_", extra="ignore", env_file=".env"
    )

    @field_validator("end_state")
    @classmethod
    def validate_end_state(cls, v):
        allowed = ["RECOVERY", "NORECOVERY", "STANDBY"]
        if v.upper() not in allowed:
            raise ValueError(f"End state must be one of: {', '.join(allowed)}")
        return v.upper()

    @field_validator("max_parallel_databases")
    @classmethod
    def validate_parallel(cls, v):
        if not 1 <= v <= 10:
            raise ValueError("max_parallel_databases must be between 1 and 10")
        return v


class MonitorSettings(BaseSettings):
    """Log shipping monitor settings.

    Attributes:
        database: Database kept in sync with the watched directory
        polling_interval: Interval in seconds between checks
        cutoff_seconds: Wall-clock limit for one resolve-and-apply round
    """

    database: Optional[str] = Field(default=None, description="Database to keep restoring")
    polling_interval: float = Field(default=5.0, description="Polling interval in seconds")
    cutoff_seconds: float = Field(default=600.0, description="Round time limit in seconds")

    model_config = SettingsConfigDict(
        env_prefix="MONITOR_", extra="ignore", env_file=".env"
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        directory: Directory to store log files
        max_size_mb: Maximum size of log file before rotation
        backup_count: Number of rotated log files to keep
        json_format: Whether to use JSON formatted logs
    """

    level: str = Field(default="INFO", description="Logging level")
    directory: str = Field(default="logs", description="Log directory")
    max_size_mb: int = Field(default=10, description="Max log file size in MB")
    backup_count: int = Field(default=5, description="Number of log backups to keep")
    json_format: bool = Field(default=True, description="Use JSON formatted logs")

    model_config = SettingsConfigDict(
        env_prefix="LOG_", extra="ignore", env_file=".env"
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate that the log level is one of the supported values."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"Log level must be one of: {', '.join(allowed_levels)}")
        return v.upper()


class AppSettings(BaseSettings):
    """Application settings."""

    mssql: MSSQLSettings = Field(default_factory=MSSQLSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    restore: RestoreSettings = Field(default_factory=RestoreSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def get_logging_config(self, console: bool = True, filename: str = "restore_chain.log") -> Dict[str, Any]:
        """Get logging configuration dictionary.

        Args:
            console: Also log to stderr; the CLI turns this off to keep
                its output stream clean
            filename: Log file name inside the log directory
        """
        level = self.logging.level
        handlers = {
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "filename": f"{self.logging.directory}/{filename}",
                "maxBytes": self.logging.max_size_mb * 1024 * 1024,
                "backupCount": self.logging.backup_count,
                "formatter": "json" if self.logging.json_format else "standard",
                "level": level,
            },
        }
        if console:
            handlers["console"] = {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": level,
            }
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                },
                "json": {
                    "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                },
            },
            "handlers": handlers,
            "loggers": {"": {"handlers": sorted(handlers), "level": level}},
        }


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Load settings once per process."""
    return AppSettings()
