"""Query filters and aggregate statistics shared by every storage backend."""

from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, Field, field_validator, model_validator

from jirasync.models.entity import EntityRecord, HistoryRecord
from jirasync.utils.time import ensure_utc


class DateRange(BaseModel):
    """Inclusive ``[start, end]`` range of instants."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) <= self.end


class EntitySortOrder(str, Enum):
    KEY_ASC = "key_asc"
    KEY_DESC = "key_desc"
    UPDATED_ASC = "updated_asc"
    UPDATED_DESC = "updated_desc"


class HistorySortOrder(str, Enum):
    TIMESTAMP_ASC = "timestamp_asc"
    TIMESTAMP_DESC = "timestamp_desc"
    ENTITY_KEY = "entity_key"
    FIELD_NAME = "field_name"


def _paginate(items: list, offset: int, limit: int | None) -> list:
    if limit is None:
        return items[offset:]
    return items[offset : offset + limit]


class EntityFilter(BaseModel):
    """AND-combination of entity predicates.

    Empty collections mean "no constraint". Without ``sort_order`` results come
    back in insertion order.
    """

    keys: list[str] | None = Field(default=None, description="Match any of these keys")
    categories: list[str] | None = Field(default=None, description="Match any key prefix")
    field_equals: dict[str, Any] = Field(
        default_factory=dict, description="Dotted field path -> expected value"
    )
    updated_range: DateRange | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    sort_order: EntitySortOrder | None = None

    def matches(self, entity: EntityRecord) -> bool:
        if self.keys and entity.key not in self.keys:
            return False
        if self.categories and entity.category not in self.categories:
            return False
        if self.updated_range is not None and not self.updated_range.contains(entity.updated_at):
            return False
        for path, expected in self.field_equals.items():
            if entity.field_value(path) != expected:
                return False
        return True

    def apply(self, entities: Iterable[EntityRecord]) -> list[EntityRecord]:
        """Filter, sort and paginate an insertion-ordered iterable."""
        selected = [entity for entity in entities if self.matches(entity)]

        if self.sort_order is EntitySortOrder.KEY_ASC:
            selected.sort(key=lambda e: e.key)
        elif self.sort_order is EntitySortOrder.KEY_DESC:
            selected.sort(key=lambda e: e.key, reverse=True)
        elif self.sort_order is EntitySortOrder.UPDATED_ASC:
            selected.sort(key=lambda e: e.updated_at)
        elif self.sort_order is EntitySortOrder.UPDATED_DESC:
            selected.sort(key=lambda e: e.updated_at, reverse=True)

        return _paginate(selected, self.offset, self.limit)


class HistoryFilter(BaseModel):
    """AND-combination of history predicates (same conventions as EntityFilter)."""

    entity_keys: list[str] | None = None
    field_names: list[str] | None = None
    authors: list[str] | None = Field(default=None, description="Author account ids")
    change_ids: list[str] | None = None
    date_range: DateRange | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    sort_order: HistorySortOrder | None = None

    def matches(self, record: HistoryRecord) -> bool:
        if self.entity_keys and record.entity_key not in self.entity_keys:
            return False
        if self.field_names and record.field_name not in self.field_names:
            return False
        if self.authors:
            if record.author is None or record.author.account_id not in self.authors:
                return False
        if self.change_ids and record.change_id not in self.change_ids:
            return False
        if self.date_range is not None and not self.date_range.contains(record.change_timestamp):
            return False
        return True

    def apply(self, records: Iterable[HistoryRecord]) -> list[HistoryRecord]:
        selected = [record for record in records if self.matches(record)]

        if self.sort_order is HistorySortOrder.TIMESTAMP_ASC:
            selected.sort(key=lambda r: (r.change_timestamp, r.sequence))
        elif self.sort_order is HistorySortOrder.TIMESTAMP_DESC:
            selected.sort(key=lambda r: (r.change_timestamp, r.sequence), reverse=True)
        elif self.sort_order is HistorySortOrder.ENTITY_KEY:
            selected.sort(key=lambda r: r.entity_key)
        elif self.sort_order is HistorySortOrder.FIELD_NAME:
            selected.sort(key=lambda r: r.field_name)

        return _paginate(selected, self.offset, self.limit)


class StorageStats(BaseModel):
    """Aggregate view of what a backend holds."""

    total_entities: int = Field(default=0, ge=0)
    entities_by_category: dict[str, int] = Field(default_factory=dict)
    entities_by_day: dict[str, int] = Field(
        default_factory=dict, description="Entity count per updated_at day (YYYY-MM-DD)"
    )
    total_history_records: int = Field(default=0, ge=0)
    history_by_field: dict[str, int] = Field(default_factory=dict)
    storage_size_bytes: int = Field(default=0, ge=0)
    last_updated: datetime | None = Field(default=None, description="Newest entity updated_at")

    @classmethod
    def from_records(
        cls,
        entities: Iterable[EntityRecord],
        history: Iterable[HistoryRecord],
        storage_size_bytes: int = 0,
    ) -> "StorageStats":
        entity_list = list(entities)
        by_field = Counter(record.field_name for record in history)
        return cls(
            total_entities=len(entity_list),
            entities_by_category=dict(Counter(e.category for e in entity_list)),
            entities_by_day=dict(Counter(e.updated_at.date().isoformat() for e in entity_list)),
            total_history_records=sum(by_field.values()),
            history_by_field=dict(by_field),
            storage_size_bytes=storage_size_bytes,
            last_updated=max((e.updated_at for e in entity_list), default=None),
        )


class HistoryStats(BaseModel):
    """Summary of the stored change history."""

    total_changes: int = 0
    unique_entities: int = 0
    unique_authors: int = 0
    field_change_counts: dict[str, int] = Field(default_factory=dict)
    oldest_change: datetime | None = None
    newest_change: datetime | None = None

    @classmethod
    def from_records(cls, records: Iterable[HistoryRecord]) -> "HistoryStats":
        record_list = list(records)
        timestamps = [r.change_timestamp for r in record_list]
        return cls(
            total_changes=len(record_list),
            unique_entities=len({r.entity_key for r in record_list}),
            unique_authors=len({r.author.account_id for r in record_list if r.author}),
            field_change_counts=dict(Counter(r.field_name for r in record_list)),
            oldest_change=min(timestamps, default=None),
            newest_change=max(timestamps, default=None),
        )
