"""Data models for the Jira sync engine."""

from jirasync.models.config import (
    AppConfig,
    JiraConfig,
    LoggingConfig,
    RetryConfig,
    StorageConfig,
    SyncConfig,
)
from jirasync.models.entity import (
    ChangeType,
    EntityRecord,
    HistoryAuthor,
    HistoryRecord,
    SyncState,
)
from jirasync.models.query import (
    DateRange,
    EntityFilter,
    EntitySortOrder,
    HistoryFilter,
    HistorySortOrder,
    HistoryStats,
    StorageStats,
)

__all__ = [
    "EntityRecord",
    "HistoryAuthor",
    "HistoryRecord",
    "ChangeType",
    "SyncState",
    "DateRange",
    "EntityFilter",
    "EntitySortOrder",
    "HistoryFilter",
    "HistorySortOrder",
    "HistoryStats",
    "StorageStats",
    "AppConfig",
    "JiraConfig",
    "LoggingConfig",
    "RetryConfig",
    "StorageConfig",
    "SyncConfig",
]
