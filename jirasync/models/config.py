"""Configuration models for the Jira sync engine."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseModel):
    """Configuration for the persistence backend."""

    type: str = Field(default="json", description="Backend type (json, sqlite)")
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific configuration (data_dir/compress, or path)",
    )


class RetryConfig(BaseModel):
    """Retry/backoff parameters for remote fetches."""

    max_attempts: int = Field(default=4, ge=1, le=20, description="Attempts per page, first included")
    base_delay: float = Field(default=1.0, ge=0.0, description="Delay before the first retry (s)")
    multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    max_delay: float = Field(default=60.0, ge=0.0, description="Upper bound for one delay (s)")


class SyncConfig(BaseModel):
    """Configuration consumed by the sync orchestrator and planner."""

    interval_minutes: int = Field(default=60, ge=1, description="Minutes between scheduled syncs")
    max_concurrent_windows: int = Field(
        default=3, ge=1, le=32, description="Windows fetched concurrently"
    )
    granularity_hours: int = Field(default=1, ge=1, description="Maximum window width in hours")
    max_history_count: int = Field(
        default=100, ge=1, description="Sync results retained for statistics"
    )
    max_exclusion_keys: int = Field(
        default=200, ge=0, description="Largest key set rendered into a NOT IN clause"
    )
    page_size: int = Field(default=100, ge=1, le=1000, description="Entities per fetch page")
    initial_lookback_hours: int = Field(
        default=24, ge=1, description="Range of the first incremental sync without a checkpoint"
    )
    full_sync_since: datetime | None = Field(
        default=None, description="If set, full syncs are chunked from this instant"
    )
    base_query: str | None = Field(
        default=None, description="JQL AND-combined with every window predicate"
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)


class JiraConfig(BaseModel):
    """Configuration for the Jira connection."""

    base_url: HttpUrl = Field(default=..., description="Jira instance URL")
    username: str | None = Field(default=None, description="Account e-mail for Cloud basic auth")
    auth_token: str = Field(default=..., description="API token (Cloud) or personal access token")
    cloud: bool = Field(default=True, description="True for Cloud, False for Server/Data Center")
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    @field_validator("username")
    @classmethod
    def _blank_username_is_none(cls, value: str | None) -> str | None:
        return value or None


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    This class uses pydantic-settings to load configuration from environment
    variables with the APP_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    jira: JiraConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
