"""Configuration for the job monitor."""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PollingConfig(BaseSettings):
    """Configuration for the polling scheduler."""

    model_config = SettingsConfigDict(env_prefix="POLLING_", env_file=".env", extra="ignore")

    interval_ms: int = Field(default=30000, ge=100, description="Milliseconds between poll cycles")
    batch_size: int = Field(default=100, ge=1, description="Maximum records fetched per cycle")
    enabled: bool = Field(default=True, description="Build the poller at startup")
    auto_start: bool = Field(default=True, description="Start polling when the API starts")
    health_threshold: float = Field(
        default=90.0, ge=0.0, le=100.0, description="Minimum success rate (%) to report healthy"
    )


class CacheConfig(BaseSettings):
    """Configuration for the record cache."""

    model_config = SettingsConfigDict(env_prefix="CACHE_", env_file=".env", extra="ignore")

    ttl_ms: int = Field(default=300000, ge=1, description="Cache entry time-to-live in milliseconds")
    max_size: int = Field(default=1000, ge=1, description="Maximum number of cached records")
    persist: bool = Field(default=True, description="Persist cache and history to SQLite")
    db_path: str = Field(default="data/cache.db", description="SQLite database path")
    history_days: int = Field(default=30, ge=1, description="Days of change history to keep")


class AlertConfig(BaseSettings):
    """Configuration for the alert engine."""

    model_config = SettingsConfigDict(env_prefix="ALERTS_", env_file=".env", extra="ignore")

    dedup_window_ms: int = Field(default=300000, ge=0, description="Deduplication window in milliseconds")
    history_size: int = Field(default=500, ge=1, description="Alert lifecycle entries kept in memory")
    in_progress_hours: float = Field(default=4.0, gt=0, description="Hours on site before a job is flagged")
    rules_file: Optional[str] = Field(default=None, description="JSON file with additional rules")


class SourceConfig(BaseSettings):
    """Configuration for the FileMaker source client."""

    model_config = SettingsConfigDict(env_prefix="FILEMAKER_", env_file=".env", extra="ignore")

    host: Optional[str] = Field(default=None, description="FileMaker server host")
    database: Optional[str] = Field(default=None, description="FileMaker database name")
    layout: str = Field(default="jobs_api", description="Layout queried for jobs")
    username: Optional[str] = Field(default=None, description="Data API user")
    password: Optional[str] = Field(default=None, description="Data API password")
    timeout_sec: float = Field(default=30.0, gt=0, description="HTTP timeout for source calls")
    lookback_days: int = Field(default=30, ge=1, description="Default job_date lookback window")
    job_types: List[str] = Field(
        default=["Delivery", "Pickup", "Move", "Recover", "Drop", "Shuttle"],
        description="Job types fetched from the source",
    )


class LoggingConfig(BaseSettings):
    """Configuration for logging."""

    model_config = SettingsConfigDict(env_prefix="LOG_", env_file=".env", extra="ignore")

    level: str = Field(default="INFO", description="Console log level")
    file: Optional[str] = Field(default=None, description="Optional rotating log file")


class AppConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    polling: PollingConfig = Field(default_factory=PollingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
