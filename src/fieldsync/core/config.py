"""
Core configuration module.
Organized into separate settings classes, one per concern, each with its own env prefix.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Authoritative store configuration.

    Any SQLAlchemy async URL works; production deployments point this at the
    shared database, tests use throwaway SQLite files.
    """

    url: str = "sqlite+aiosqlite:///./fieldsync.db"
    echo: bool = False
    pool_pre_ping: bool = True

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class QueueSettings(BaseSettings):
    """Durable sync queue and retry/backoff configuration.

    The queue lives in a local database so it survives restarts and does not
    depend on the authoritative store being reachable.
    """

    database_url: str = "sqlite+aiosqlite:///./fieldsync_queue.db"
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the first failed delivery before an operation is abandoned",
    )
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    drain_interval_seconds: int = Field(
        default=30,
        ge=1,
        description="Interval of the periodic drain while online",
    )

    model_config = SettingsConfigDict(
        env_prefix="SYNC_QUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("max_delay_seconds")
    @classmethod
    def validate_max_delay(cls, v: float, info) -> float:
        """The cap must not be below the initial delay."""
        initial = info.data.get("initial_delay_seconds", 0)
        if v < initial:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        return v


class AllocationSettings(BaseSettings):
    """Allocation engine configuration."""

    default_storage_location_id: Optional[str] = Field(
        default=None,
        description="Storage location used when returned equipment has no recorded home",
    )
    write_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="A write not completed within this window is treated as a connectivity failure",
    )

    model_config = SettingsConfigDict(
        env_prefix="ALLOCATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class LogSettings(BaseSettings):
    """Logging configuration settings."""

    level: str = "INFO"
    enable_file_logging: bool = False
    enable_console_logging: bool = True
    log_dir: str = "logs"
    max_size: int = 10 * 1024 * 1024
    backup_count: int = 5
    enable_query_logging: bool = False

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def log_config(self) -> dict:
        """Get logging configuration."""
        return {
            "level": self.level,
            "enable_file_logging": self.enable_file_logging,
            "log_dir": self.log_dir,
            "max_file_size": self.max_size,
            "backup_count": self.backup_count,
            "enable_console": self.enable_console_logging,
            "enable_query_logging": self.enable_query_logging,
        }


class Settings(BaseSettings):
    """Main settings."""

    database: DatabaseSettings = DatabaseSettings()
    queue: QueueSettings = QueueSettings()
    allocation: AllocationSettings = AllocationSettings()
    logging: LogSettings = LogSettings()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Global settings instance
settings = Settings()
