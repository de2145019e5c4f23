"""Data models for synchronization operations."""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jirasync.models.entity import EntityRecord
from jirasync.utils.time import HOUR, ensure_utc


class TimeWindow(BaseModel):
    """Half-open ``[start, end)`` slice of the remote timeline."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.start > self.end:
            raise ValueError("window start must not be after its end")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) < self.end

    def overlaps_hour(self, bucket_start: datetime) -> bool:
        """True if the window shares any instant with ``[bucket_start, bucket_start + 1h)``."""
        bucket_start = ensure_utc(bucket_start)
        return self.start < bucket_start + HOUR and bucket_start < self.end


class PlannedWindow(BaseModel):
    """A window together with the remote query that fetches it."""

    model_config = ConfigDict(frozen=True)

    window: TimeWindow
    predicate: str
    is_boundary: bool = Field(
        default=False, description="Window starts in the checkpoint's ambiguous hour"
    )
    excluded_keys: list[str] = Field(
        default_factory=list, description="Keys rendered into the predicate's NOT IN clause"
    )
    post_filter_keys: list[str] = Field(
        default_factory=list,
        description="Keys to drop client side because the NOT IN clause was too large",
    )


class WindowPlan(BaseModel):
    """Ordered, contiguous windows covering a requested range."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    granularity_hours: int
    windows: list[PlannedWindow] = Field(default_factory=list)

    @property
    def time_windows(self) -> list[TimeWindow]:
        return [planned.window for planned in self.windows]

    @property
    def is_empty(self) -> bool:
        return not self.windows


class ChangeSet(BaseModel):
    """Classification of one fetched batch against what is already known."""

    new_entities: list[EntityRecord] = Field(
        default_factory=list, description="Entities never seen before"
    )
    updated_entities: list[EntityRecord] = Field(
        default_factory=list, description="Known entities whose updated_at moved"
    )
    skipped_keys: list[str] = Field(
        default_factory=list, description="Keys already ingested with the same updated_at"
    )

    @property
    def has_changes(self) -> bool:
        return bool(self.new_entities or self.updated_entities)

    @property
    def to_persist(self) -> list[EntityRecord]:
        return [*self.new_entities, *self.updated_entities]

    @property
    def total_changes(self) -> int:
        return len(self.new_entities) + len(self.updated_entities)


class SyncPhase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    CHECKPOINTING = "checkpointing"
    FAILED = "failed"


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class FailedWindow(BaseModel):
    """A window that could not be fetched or persisted."""

    window: TimeWindow
    cause: str
    error_type: str
    attempts: int = Field(default=1, ge=0)


class SyncResult(BaseModel):
    """Report of one orchestrator cycle."""

    sync_type: SyncType
    start_time: datetime
    end_time: datetime | None = None
    duration_seconds: float = Field(default=0.0, ge=0.0)
    new_count: int = Field(default=0, ge=0, description="Entities seen for the first time")
    updated_count: int = Field(default=0, ge=0, description="Known entities that changed")
    skipped_count: int = Field(default=0, ge=0, description="Re-fetched entities left untouched")
    history_count: int = Field(default=0, ge=0, description="History records written")
    parse_error_count: int = Field(default=0, ge=0, description="Malformed change entries skipped")
    windows_total: int = Field(default=0, ge=0)
    windows_succeeded: int = Field(default=0, ge=0)
    failed_windows: list[FailedWindow] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list, description="Cycle-level errors")
    checkpoint_advanced: bool = False
    last_sync_time: datetime | None = Field(
        default=None, description="Checkpoint after the cycle (unchanged if not advanced)"
    )
    cancelled: bool = False

    @property
    def synced_count(self) -> int:
        return self.new_count + self.updated_count

    @property
    def success(self) -> bool:
        """True if every window succeeded and no cycle-level error occurred."""
        return not self.failed_windows and not self.errors

    @property
    def is_hard_failure(self) -> bool:
        """Nothing was achieved: a cycle error, or a non-empty plan with no successful window."""
        if self.errors:
            return True
        return self.windows_total > 0 and self.windows_succeeded == 0

    @property
    def status(self) -> str:
        """``SUCCESS``, ``PARTIAL`` when some windows failed, or ``FAILED``."""
        if self.is_hard_failure:
            return "FAILED"
        return "SUCCESS" if self.success else "PARTIAL"

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def finish(self, end_time: datetime) -> None:
        self.end_time = ensure_utc(end_time)
        self.duration_seconds = max(0.0, (self.end_time - self.start_time).total_seconds())


class SyncServiceStats(BaseModel):
    """Statistics over the retained sync results."""

    total_syncs: int = 0
    successful_syncs: int = 0
    total_entities_synced: int = 0
    average_duration_seconds: float = 0.0
    last_sync_time: datetime | None = None
    last_successful_sync_time: datetime | None = None
