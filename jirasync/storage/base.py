"""Persistence contract every storage backend implements."""

from abc import ABC, abstractmethod
from typing import Iterable

from jirasync.models.entity import EntityRecord, HistoryRecord, SyncState
from jirasync.models.query import EntityFilter, HistoryFilter, HistoryStats, StorageStats


class PersistenceStore(ABC):
    """Abstract interface for entity, history and checkpoint storage.

    This interface defines the contract that all storage implementations must
    follow, so the sync orchestrator never depends on a concrete backend.
    Every failure surfaces as ``PersistenceError``.
    """

    @abstractmethod
    def save_entities(self, entities: Iterable[EntityRecord]) -> int:
        """Upsert entities by key.

        Saving an identical batch again leaves the store unchanged.

        Args:
            entities: Entities to write; later duplicates of a key win

        Returns:
            Number of entities actually written (new or changed)

        Raises:
            PersistenceError: If the write fails
        """

    @abstractmethod
    def load_entities(self, entity_filter: EntityFilter | None = None) -> list[EntityRecord]:
        """Load entities matching every predicate of the filter.

        Results come back in the filter's sort order, or in insertion order if
        none is requested, with offset/limit applied last.

        Raises:
            PersistenceError: If the read fails
        """

    @abstractmethod
    def count_entities(self, entity_filter: EntityFilter | None = None) -> int:
        """Count entities matching the filter (limit and offset ignored)."""

    @abstractmethod
    def delete_entities(self, keys: Iterable[str]) -> int:
        """Delete entities by key and return how many existed."""

    @abstractmethod
    def save_history(self, records: Iterable[HistoryRecord]) -> int:
        """Upsert history records by ``(entity_key, change_id, field_name)``.

        Returns:
            Number of records actually written (new or changed)

        Raises:
            PersistenceError: If the write fails
        """

    @abstractmethod
    def load_history(self, history_filter: HistoryFilter | None = None) -> list[HistoryRecord]:
        """Load history records matching the filter, same ordering rules as entities."""

    @abstractmethod
    def delete_history(self, entity_keys: Iterable[str]) -> int:
        """Delete every history record of the given entities and return the count."""

    @abstractmethod
    def save_sync_state(self, state: SyncState) -> None:
        """Replace the stored checkpoint atomically.

        Raises:
            PersistenceError: If the write fails; the previous state is kept
        """

    @abstractmethod
    def load_sync_state(self) -> SyncState | None:
        """Return the most recently committed checkpoint, or None."""

    @abstractmethod
    def get_stats(self) -> StorageStats:
        """Aggregate counts over stored entities and history."""

    def get_history_stats(self) -> HistoryStats:
        """Summary of the stored change history."""
        return HistoryStats.from_records(self.load_history())

    def close(self) -> None:
        """Release backend resources. The default has nothing to release."""

    def __enter__(self) -> "PersistenceStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
