"""Pydantic models for synchronized entities, their change history, and sync checkpoints."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from jirasync.utils.time import ensure_utc, floor_hour, parse_jira_datetime


def _coerce_instant(value: Any) -> Any:
    if isinstance(value, str):
        return parse_jira_datetime(value)
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


class EntityRecord(BaseModel):
    """A remote entity (a Jira issue).

    Only ``key`` and ``updated_at`` drive synchronization decisions; everything
    else is carried through untouched.
    """

    key: str = Field(default=..., min_length=1, description="Remote identity (e.g. PROJ-123)")
    updated_at: datetime = Field(default=..., description="Last remote modification time")
    entity_id: str | None = Field(default=None, description="Remote numeric id, if known")
    fields: dict[str, Any] = Field(
        default_factory=dict, description="Opaque remote attributes, custom fields included"
    )
    changelog: Any = Field(
        default=None, description="Raw changelog blob as returned by the remote, if expanded"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "key": "PROJ-123",
                "updated_at": "2024-01-15T14:30:00Z",
                "entity_id": "10042",
                "fields": {"summary": "Fix login", "status": {"name": "Open"}},
            }
        }
    }

    @field_validator("updated_at", mode="before")
    @classmethod
    def _parse_updated_at(cls, value: Any) -> Any:
        return _coerce_instant(value)

    @property
    def category(self) -> str:
        """Project part of the key, used for grouping statistics."""
        prefix, sep, _ = self.key.rpartition("-")
        return prefix if sep else self.key

    def field_value(self, path: str) -> Any:
        """Resolve a dotted path (``status.name``) inside ``fields``; None if absent."""
        current: Any = self.fields
        for part in path.split("."):
            if not isinstance(current, dict) or part not in current:
                return None
            current = current[part]
        return current

    def storage_payload(self) -> dict[str, Any]:
        """JSON-safe representation persisted by backends (changelog is stored as history)."""
        return self.model_dump(mode="json", exclude={"changelog"})


class ChangeType(str, Enum):
    """Coarse classification of a field change."""

    STATUS_CHANGE = "status_change"
    ASSIGNEE_CHANGE = "assignee_change"
    PRIORITY_CHANGE = "priority_change"
    CUSTOM_FIELD = "custom_field"
    FIELD_UPDATE = "field_update"


class HistoryAuthor(BaseModel):
    """Who made a change."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    display_name: str
    email_address: str | None = None


class HistoryRecord(BaseModel):
    """One field delta of one remote change event.

    Identity is ``(entity_key, change_id, field_name)``. Records are immutable.
    """

    model_config = ConfigDict(frozen=True)

    entity_key: str = Field(default=..., min_length=1)
    change_id: str = Field(default=..., min_length=1)
    field_name: str = Field(default=..., min_length=1)
    change_timestamp: datetime
    sequence: int = Field(default=0, ge=0, description="Position within the normalized changelog")
    entity_id: str | None = None
    field_id: str | None = None
    from_value: str | None = None
    to_value: str | None = None
    from_display: str | None = None
    to_display: str | None = None
    author: HistoryAuthor | None = None

    @field_validator("change_timestamp", mode="before")
    @classmethod
    def _parse_change_timestamp(cls, value: Any) -> Any:
        return _coerce_instant(value)

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.entity_key, self.change_id, self.field_name)

    @property
    def change_type(self) -> ChangeType:
        if self.field_name == "status":
            return ChangeType.STATUS_CHANGE
        if self.field_name == "assignee":
            return ChangeType.ASSIGNEE_CHANGE
        if self.field_name == "priority":
            return ChangeType.PRIORITY_CHANGE
        if self.field_id is not None and self.field_id.startswith("customfield_"):
            return ChangeType.CUSTOM_FIELD
        return ChangeType.FIELD_UPDATE

    def change_summary(self) -> str:
        """Human readable one-liner, e.g. for CLI output."""
        author_name = self.author.display_name if self.author else "System"
        return (
            f"{self.change_timestamp:%Y-%m-%d %H:%M:%S}: {author_name} changed "
            f"{self.field_name} from '{self.from_display or 'None'}' "
            f"to '{self.to_display or 'None'}'"
        )


class SyncState(BaseModel):
    """Durable checkpoint of an incremental sync.

    ``synced_keys`` holds the keys already ingested from the hour bucket starting
    at ``bucket_start``; every earlier hour is fully committed.
    """

    last_sync_time: datetime = Field(default=..., description="End of the committed timeline")
    synced_keys: set[str] = Field(
        default_factory=set, description="Keys already ingested from the boundary bucket"
    )
    bucket_start: datetime | None = Field(
        default=None, description="Hour bucket synced_keys refers to"
    )
    filter_config: dict[str, Any] = Field(
        default_factory=dict, description="Caller-owned filter settings, stored as-is"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "last_sync_time": "2024-01-15T14:30:00Z",
                "synced_keys": ["PROJ-1", "PROJ-7"],
                "bucket_start": "2024-01-15T14:00:00Z",
                "filter_config": {"project": "PROJ"},
            }
        }
    }

    @field_validator("last_sync_time", "bucket_start", mode="before")
    @classmethod
    def _parse_instants(cls, value: Any) -> Any:
        return _coerce_instant(value)

    @model_validator(mode="after")
    def _default_bucket(self) -> "SyncState":
        if self.bucket_start is None:
            self.bucket_start = floor_hour(self.last_sync_time)
        return self

    @field_serializer("synced_keys")
    def _serialize_synced_keys(self, keys: set[str]) -> list[str]:
        return sorted(keys)
